from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    REACH_MAX_LOOP = "reach_max_loop"
    RETRY_EXHAUSTED = "retry_exhausted"
    ENVIRONMENT_ERROR = "environment_error"
    SCREENSHOT_RETRY = "screenshot_retry"
    UNKNOWN = "unknown"


class AgentError(Exception):
    """Base for every error the agent core raises."""

    kind: str = "AgentError"

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class ParseError(AgentError):
    """Model text did not contain any recognizable action call."""

    def __init__(self, message: str, text: str = "", kind: str = "NoActionFound") -> None:
        super().__init__(message)
        self.kind = kind
        self.text = text


class ValidationError(AgentError):
    UNKNOWN_ACTION = "UnknownAction"
    MISSING_ARGUMENT = "MissingArgument"
    TYPE_MISMATCH = "TypeMismatch"

    def __init__(
        self,
        kind: str,
        message: str,
        action: Optional[str] = None,
        param: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.action = action
        self.param = param


class ModelError(AgentError):
    """The model call itself failed (transport, quota, empty reply)."""

    kind = "ModelError"


class CoordinateError(AgentError):
    """Geometry needed to place a point is missing or unusable."""

    kind = "CoordinateError"


class ExecutionError(AgentError):
    kind = "ExecutionError"

    def __init__(self, message: str, action: Optional[str] = None) -> None:
        super().__init__(message)
        self.action = action


class StepTimeoutError(AgentError, TimeoutError):
    """A model call, screenshot or action execution exceeded its bound."""

    kind = "TimeoutError"

    def __init__(self, what: str, timeout_s: float) -> None:
        super().__init__(f"{what} timed out after {timeout_s:.1f}s")
        self.what = what
        self.timeout_s = timeout_s


# Failures that are fed back to the model and retried.
RECOVERABLE = (ParseError, ValidationError, ModelError, ExecutionError, StepTimeoutError)
