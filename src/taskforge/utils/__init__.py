"""Small runtime utilities shared across the orchestrator."""

from .abort import AbortSignal, TaskAbortedError
from .resources import ResourceGuard

__all__ = ["AbortSignal", "ResourceGuard", "TaskAbortedError"]
