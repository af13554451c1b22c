"""Convenience exports for taskforge agent client implementations."""

from .agent_client import (
    AgentChunk,
    AgentClient,
    AgentClientError,
    AgentRequest,
    AgentResponse,
    AgentTimeoutError,
    AgentTransportError,
    CommandAgentClient,
)

__all__ = [
    "AgentChunk",
    "AgentClient",
    "AgentClientError",
    "AgentRequest",
    "AgentResponse",
    "AgentTimeoutError",
    "AgentTransportError",
    "CommandAgentClient",
]
