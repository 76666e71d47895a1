"""Logging setup for provisor.

Provides console/file logging configuration driven by ``-v`` counts or an
explicit level name, a TRACE level below DEBUG for transport chatter, and a
small structured logger that tags every message with run context such as
the target host.
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Remote command lines and transfer sizes are logged at TRACE
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
}

LEVEL_NAMES = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS.get(min(verbosity, 3), TRACE)


def get_level_from_name(level_name: str) -> int:
    """Convert a level name to a logging level.

    Raises:
        ValueError: If the level name is not recognised
    """
    level = LEVEL_NAMES.get(level_name.lower())
    if level is None:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")
    return level


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Configure the root logger for a provisor run.

    Args:
        level: Console logging level
        format_string: Custom format (chosen from the level when None)
        log_file: Optional path to also write logs to
        file_level: Separate level for the file handler (defaults to level)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="/tmp/provisor.log",
        ...                   file_level=logging.DEBUG)
    """
    if format_string is None:
        if level <= TRACE:
            format_string = TRACE_FORMAT
        elif level <= logging.DEBUG:
            format_string = DEBUG_FORMAT
        else:
            format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root_logger.addHandler(file_handler)

    # asyncssh logs every channel open at INFO
    logging.getLogger("asyncssh").setLevel(max(level, logging.WARNING))


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.DEBUG,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time a block and log its duration.

    Args:
        logger: Logger instance to use
        operation: Description of the timed operation
        level: Log level to use
        threshold: Only log when the duration reaches this many seconds
        **context: Extra key=value pairs appended to the message
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        if threshold is None or duration >= threshold:
            message = f"{operation} completed in {duration:.3f}s"
            if context:
                message += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
            logger.log(level, message)


class StructuredLogger:
    """Logger that appends fixed context to every message.

    Example:
        >>> logger = StructuredLogger("provisor.engine", host="web01")
        >>> logger.info("Starting run")
        INFO [provisor.engine] Starting run (host=web01)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = context.copy()

    def _format_message(self, message: str, **extra: Any) -> str:
        combined = {**self.context, **extra}
        if not combined:
            return message
        context_str = ", ".join(f"{k}={v}" for k, v in combined.items())
        return f"{message} ({context_str})"

    def isEnabledFor(self, level: int) -> bool:  # noqa: N802
        return self.logger.isEnabledFor(level)

    def log(self, level: int, message: str, **extra: Any) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._format_message(message, **extra))

    def trace(self, message: str, **extra: Any) -> None:
        self.log(TRACE, message, **extra)

    def debug(self, message: str, **extra: Any) -> None:
        self.log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> None:
        self.log(logging.INFO, message, **extra)

    def warning(self, message: str, **extra: Any) -> None:
        self.log(logging.WARNING, message, **extra)

    def error(self, message: str, **extra: Any) -> None:
        self.log(logging.ERROR, message, **extra)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a StructuredLogger bound to the given context."""
    return StructuredLogger(name, **context)
