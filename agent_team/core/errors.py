"""Exceptions raised by the team core."""
from __future__ import annotations


class MessageBusError(RuntimeError):
    """Base class for transport failures surfaced to the caller of the bus."""


class QueueFullError(MessageBusError):
    """Raised when a recipient mailbox already holds the maximum number of entries."""

    def __init__(self, agent_id: str, size: int) -> None:
        super().__init__(f"Message queue full for agent {agent_id} ({size} pending)")
        self.agent_id = agent_id
        self.size = size


class RequestTimeoutError(MessageBusError, TimeoutError):
    """Raised when no response arrives for a correlated request in time."""

    def __init__(self, correlation_id: str, timeout: float) -> None:
        super().__init__(f"Request timeout for correlation ID {correlation_id} after {timeout:.3f}s")
        self.correlation_id = correlation_id
        self.timeout = timeout


class TaskStateError(ValueError):
    """Raised when a task in a terminal state would be moved to another status."""
