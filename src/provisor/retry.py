"""Retry policy with error classification for provisor.

A step failure is retried only when it is transient (a dropped connection,
a timeout, a lock held by another process) and the step's handler is
idempotent. Permanent failures such as authentication errors, bad
parameters or a handler reporting a failed mutation are never retried.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ErrorTypes, ProvisorError

logger = logging.getLogger(__name__)


TRANSIENT_ERRORS = {
    ErrorTypes.CONNECTION_TIMEOUT,
    ErrorTypes.CONNECTION_REFUSED,
    ErrorTypes.HOST_UNREACHABLE,
    ErrorTypes.RESOURCE_BUSY,
}

PERMANENT_ERRORS = {
    ErrorTypes.AUTHENTICATION_FAILED,
    ErrorTypes.PERMISSION_DENIED,
    ErrorTypes.UNKNOWN_TASK_TYPE,
    ErrorTypes.INVALID_PARAMETERS,
    ErrorTypes.APPLY_FAILED,
    ErrorTypes.PROBE_FAILED,
    ErrorTypes.UNRESOLVED_VARIABLE,
    ErrorTypes.CANCELLED,
}


def is_transient_error(error_type: str) -> bool:
    """Check if an error type is transient (worth retrying)."""
    return error_type in TRANSIENT_ERRORS


def is_permanent_error(error_type: str) -> bool:
    """Check if an error type is permanent (never retried)."""
    return error_type in PERMANENT_ERRORS


@dataclass
class RetryConfig:
    """Configuration for step retries.

    Attributes:
        max_retries: Retries after the first attempt (0 = never retry)
        initial_delay: Delay before the first retry in seconds
        max_delay: Cap on the backoff delay
        backoff_factor: Multiplier applied per attempt
        jitter: Fraction of the delay randomised in either direction
        retry_on: Explicit error types to retry, overriding the defaults
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: float = 0.1
    retry_on: set[str] = field(default_factory=set)

    def should_retry_error(self, error_type: str) -> bool:
        """Check if this error type is retryable under this config."""
        if self.retry_on:
            return error_type in self.retry_on
        return is_transient_error(error_type)

    def get_delay(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (1-based).

        Exponential backoff capped at ``max_delay`` with a small jitter so
        parallel hosts do not retry in lockstep.
        """
        delay = self.initial_delay * (self.backoff_factor ** max(0, attempt - 1))
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * (random.random() * 2 - 1)
        return max(0.0, delay)


@dataclass
class RetryState:
    """Retry bookkeeping for a single step.

    Attributes:
        attempts: Number of attempts made so far
        last_error_type: Classification of the most recent failure
        last_error_message: Message of the most recent failure
        gave_up: True when retries were exhausted on a retryable error
    """

    attempts: int = 0
    last_error_type: str = ""
    last_error_message: str = ""
    gave_up: bool = False

    def record(self, exc: BaseException) -> str:
        """Remember a failure and return its classification."""
        error_type = classify_exception(exc)
        self.last_error_type = error_type
        self.last_error_message = str(exc)
        return error_type

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "attempts": self.attempts,
            "last_error_type": self.last_error_type,
            "last_error_message": self.last_error_message,
            "gave_up": self.gave_up,
        }


async def backoff(config: RetryConfig, attempt: int, label: str = "") -> float:
    """Sleep for the backoff delay that follows ``attempt``."""
    delay = config.get_delay(attempt)
    logger.info(f"Retry {attempt}/{config.max_retries} for {label}: waiting {delay:.1f}s")
    await asyncio.sleep(delay)
    return delay


def classify_exception(exc: BaseException) -> str:
    """Classify an exception into an ErrorTypes constant.

    provisor errors carry their own classification. Anything else is
    classified from the exception type and message, as raised by asyncio,
    asyncssh or the operating system.
    """
    if isinstance(exc, ProvisorError):
        return exc.error_type
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorTypes.CONNECTION_TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return ErrorTypes.CONNECTION_REFUSED
    if isinstance(exc, PermissionError):
        return ErrorTypes.PERMISSION_DENIED

    exc_name = type(exc).__name__.lower()
    if "timeout" in exc_name:
        return ErrorTypes.CONNECTION_TIMEOUT
    if "auth" in exc_name or "permissiondenied" in exc_name:
        return ErrorTypes.AUTHENTICATION_FAILED
    if "connection" in exc_name or "disconnect" in exc_name:
        return ErrorTypes.CONNECTION_REFUSED
    return classify_error_message(str(exc))


def classify_error_message(error: str) -> str:
    """Classify an error from its message text."""
    error_lower = error.lower()

    if "timed out" in error_lower or "timeout" in error_lower:
        return ErrorTypes.CONNECTION_TIMEOUT
    if "connection refused" in error_lower:
        return ErrorTypes.CONNECTION_REFUSED
    if "could not get lock" in error_lower or "temporarily unavailable" in error_lower:
        return ErrorTypes.RESOURCE_BUSY
    if "permission denied" in error_lower:
        return ErrorTypes.PERMISSION_DENIED
    if "authentication" in error_lower:
        return ErrorTypes.AUTHENTICATION_FAILED
    if "unreachable" in error_lower or "no route" in error_lower:
        return ErrorTypes.HOST_UNREACHABLE
    return ErrorTypes.UNKNOWN
