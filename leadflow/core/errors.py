"""Exception hierarchy for the lead-processing agents.

    LeadflowError
    ├── CompletionError → CompletionUnavailableError, CompletionResponseError
    ├── RoutingError → AgentNotFoundError
    ├── MessageValidationError
    ├── ExecutionError → ExecutionNotFoundError, ExecutionFailedError, ExecutionTimeoutError
    └── StageExecutionError
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class LeadflowError(Exception):
    """Base exception for all orchestration errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {type(self.cause).__name__}: {self.cause})"
        return self.message


class CompletionError(LeadflowError):
    """A call to the completion service did not produce usable text."""


class CompletionUnavailableError(CompletionError):
    """The completion service could not be reached (network, timeout)."""


class CompletionResponseError(CompletionError):
    """The completion service answered with an error payload or empty content."""


class RoutingError(LeadflowError):
    """A message could not be delivered."""


class AgentNotFoundError(RoutingError):
    """The recipient named on a message is not registered."""

    def __init__(self, agent_name: str) -> None:
        super().__init__(f"Agent not found: {agent_name}", details={"agent": agent_name})
        self.agent_name = agent_name


class MessageValidationError(LeadflowError):
    """A message payload does not match the schema for its type."""


class ExecutionError(LeadflowError):
    """Base class for errors tied to a single execution."""


class ExecutionNotFoundError(ExecutionError):
    """No live execution exists for the given id."""


class ExecutionFailedError(ExecutionError):
    """The execution reached the failed state."""


class ExecutionTimeoutError(ExecutionError):
    """The execution (or the wait on it) exceeded its deadline."""


class StageExecutionError(LeadflowError):
    """A business stage could not be completed."""
