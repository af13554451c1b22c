"""Shared phase enumeration and checkpoint labels."""

from __future__ import annotations

from enum import Enum


class TaskPhase(str, Enum):
    """Enumeration of the phases a task attempt moves through."""

    SELECTION = "selection"
    CONTEXT = "context"
    PROMPT = "prompt"
    AGENT = "agent"
    APPLY = "apply"
    TESTS = "tests"
    VCS = "vcs"
    FINALIZE = "finalize"


def checkpoint_stage(task_key: str, phase: TaskPhase | str, status: str) -> str:
    """Return the job checkpoint stage label for a phase transition."""
    label = phase.value if isinstance(phase, TaskPhase) else str(phase)
    return f"task:{task_key}:{label}:{status}"


__all__ = ["TaskPhase", "checkpoint_stage"]
