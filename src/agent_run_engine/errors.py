"""
Error taxonomy for agent runs.

Setup and model errors are fatal and abort the run. Tool errors are
recoverable: the state machine folds them into the transcript as
error-flagged tool results and the model decides how to proceed.
"""

from __future__ import annotations

from typing import Any


class AgentRunError(Exception):
    """Base class for all run engine errors."""

    code = "unknown"


# ---------------------------------------------------------------------------
# Setup (fatal)
# ---------------------------------------------------------------------------


class MissingCredentialsError(AgentRunError):
    """The caller omitted one or more required credential fields."""

    code = "missing_credentials"

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required credentials: {', '.join(self.missing)}")


class AgentLoadError(AgentRunError):
    """The agent identity for the conversation could not be loaded."""

    code = "agent_load_failed"


class ToolCatalogError(AgentRunError):
    """The external tool catalog could not be reached or refused the request."""

    code = "tool_catalog_unavailable"


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class ModelError(AgentRunError):
    """Base class for model invocation failures."""

    code = "model_error"


class ModelTransientError(ModelError):
    """Upstream overload or attempt timeout. Eligible for retry."""

    code = "model_overloaded"


class ModelFatalError(ModelError):
    """Non-transient model failure. Never retried."""

    code = "model_failed"


class ModelRetriesExhaustedError(ModelFatalError):
    """Every allowed attempt failed with a transient error."""

    code = "model_retries_exhausted"

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Model still unavailable after {attempts} attempts: {last_error}")


# ---------------------------------------------------------------------------
# Tools (recoverable, per call)
# ---------------------------------------------------------------------------


class ToolError(AgentRunError):
    """Base class for per-call tool failures."""

    code = "tool_error"

    def __init__(self, tool_name: str, message: str, details: Any = None) -> None:
        self.tool_name = tool_name
        self.details = details
        super().__init__(message)


class ToolNotFoundError(ToolError):
    """The model asked for a tool that is not bound to this run."""

    code = "unknown_tool"


class InvalidToolArgumentsError(ToolError):
    """Tool arguments were not a JSON object or failed schema validation."""

    code = "invalid_tool_arguments"


class ToolExecutionError(ToolError):
    """The tool ran and failed."""

    code = "tool_execution"


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------


class RunAbortedError(AgentRunError):
    """Raised when a run is aborted through its abort signal."""

    code = "aborted"
