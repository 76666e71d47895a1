"""Exception hierarchy for provisor.

Errors fall into two families:

- Build-time errors (``BuildError`` subclasses) are raised while loading a
  task document or expanding it into a plan. They abort the run before any
  connection is opened, so no remote side effects can occur.
- Runtime errors are raised by connections and task handlers while a step
  executes. The engine never lets them escape: they become a ``failed``
  TaskResult and the halt/continue rule decides what happens next.

Every exception carries an ``error_type`` classification from ``ErrorTypes``,
which the retry policy uses to decide whether a failure is worth retrying.
"""

from typing import Any


class ErrorTypes:
    """String constants classifying failures for retry decisions."""

    CONNECTION_TIMEOUT = "ConnectionTimeout"
    CONNECTION_REFUSED = "ConnectionRefused"
    HOST_UNREACHABLE = "HostUnreachable"
    RESOURCE_BUSY = "ResourceBusy"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    PERMISSION_DENIED = "PermissionDenied"
    UNKNOWN_TASK_TYPE = "UnknownTaskType"
    INVALID_PARAMETERS = "InvalidParameters"
    PROBE_FAILED = "ProbeFailed"
    APPLY_FAILED = "ApplyFailed"
    UNRESOLVED_VARIABLE = "UnresolvedVariable"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class ProvisorError(Exception):
    """Base class for all provisor errors.

    Attributes:
        message: Human-readable error message, preserved verbatim in reports
        error_type: Classification from ErrorTypes
        details: Additional structured context
    """

    error_type = ErrorTypes.UNKNOWN

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"error_type": self.error_type, "message": self.message, **self.details}


# Build-time errors ---------------------------------------------------------


class BuildError(ProvisorError):
    """Raised while building a plan; nothing has touched a host yet."""


class PlaybookError(BuildError):
    """Raised when a task document is malformed."""


class UnresolvedVariableError(BuildError):
    """Raised when a ``{{ name }}`` reference has no binding and no default."""

    error_type = ErrorTypes.UNRESOLVED_VARIABLE


class InvalidLoopError(BuildError):
    """Raised when ``loop_items`` is present but is not a list of items."""


class UnknownTaskTypeError(BuildError):
    """Raised when no handler is registered for a task type."""

    error_type = ErrorTypes.UNKNOWN_TASK_TYPE

    def __init__(self, task_type: str) -> None:
        super().__init__(f"Unknown task type '{task_type}'", task_type=task_type)
        self.task_type = task_type


class UnknownHandlerError(BuildError):
    """Raised when a task notifies a handler that is not declared."""

    def __init__(self, handler_name: str, task_name: str) -> None:
        super().__init__(
            f"Task '{task_name}' notifies undeclared handler '{handler_name}'",
            handler=handler_name,
            task=task_name,
        )


# Runtime errors ------------------------------------------------------------


class ConnectionError(ProvisorError):  # noqa: A001
    """Transient transport failure (timeout, refused, dropped channel)."""

    error_type = ErrorTypes.CONNECTION_TIMEOUT


class AuthError(ProvisorError):
    """Fatal authentication or authorization failure on the transport."""

    error_type = ErrorTypes.AUTHENTICATION_FAILED


class TransientError(ProvisorError):
    """A remote resource is temporarily unavailable (e.g. a held dpkg lock)."""

    error_type = ErrorTypes.RESOURCE_BUSY


class ProbeError(ProvisorError):
    """Raised by a handler's probe when the resource cannot be inspected."""

    error_type = ErrorTypes.PROBE_FAILED


class ApplyError(ProvisorError):
    """Raised by a handler when the mutation it performs fails."""

    error_type = ErrorTypes.APPLY_FAILED


class ParameterError(ApplyError):
    """Raised when task parameters do not match the handler's schema."""

    error_type = ErrorTypes.INVALID_PARAMETERS


class StepCancelledError(ProvisorError):
    """Recorded for the step that was about to run when a run was cancelled."""

    error_type = ErrorTypes.CANCELLED
