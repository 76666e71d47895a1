"""Progress reporting for provisor.

Provides callback-based progress tracking for playbook runs, supporting
both colored text output (rich) and NDJSON events for machines.
"""

import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.text import Text

from .report import RunReport
from .types import Outcome, TaskResult

OUTCOME_STYLES = {
    Outcome.OK: "green",
    Outcome.CHANGED: "yellow",
    Outcome.FAILED: "bold red",
    Outcome.SKIPPED: "cyan",
}


@dataclass
class ProgressEvent:
    """A progress event during a run.

    Attributes:
        event_type: Type of event (host_start, step_complete, step_retry, ...)
        host: Host name, or "*" for run-wide events
        timestamp: When the event occurred
        details: Additional event-specific details
    """

    event_type: str
    host: str
    timestamp: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event": self.event_type,
            "host": self.host,
            "timestamp": self.timestamp,
        }
        result.update(self.details)
        return result

    def to_json(self) -> str:
        """Convert to JSON string (NDJSON format)."""
        return json.dumps(self.to_dict(), default=str)


class ProgressReporter(ABC):
    """Base class for progress reporters."""

    @abstractmethod
    def on_execution_start(self, total_hosts: int, playbook: str) -> None:
        """Called when a run starts."""

    @abstractmethod
    def on_host_start(self, host: str) -> None:
        """Called when the engine for a host starts."""

    @abstractmethod
    def on_step_complete(self, host: str, result: TaskResult) -> None:
        """Called when a step reaches a terminal state."""

    @abstractmethod
    def on_step_retry(
        self,
        host: str,
        step: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        """Called when a step is about to be retried."""

    @abstractmethod
    def on_host_complete(self, host: str, report: RunReport) -> None:
        """Called when the engine for a host finishes."""

    @abstractmethod
    def on_execution_complete(
        self,
        total: int,
        successful: int,
        failed: int,
        duration: float,
    ) -> None:
        """Called when the run completes on every host."""


class JsonProgressReporter(ProgressReporter):
    """Reports progress as NDJSON (newline-delimited JSON) events."""

    def __init__(self, output: Any = None) -> None:
        """Initialize JSON progress reporter.

        Args:
            output: Output stream (defaults to sys.stderr to not pollute stdout)
        """
        self.output = output or sys.stderr

    def _emit(self, event_type: str, host: str, **details: Any) -> None:
        event = ProgressEvent(
            event_type=event_type,
            host=host,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details,
        )
        print(event.to_json(), file=self.output, flush=True)

    def on_execution_start(self, total_hosts: int, playbook: str) -> None:
        self._emit("execution_start", "*", total_hosts=total_hosts, playbook=playbook)

    def on_host_start(self, host: str) -> None:
        self._emit("host_start", host)

    def on_step_complete(self, host: str, result: TaskResult) -> None:
        self._emit("step_complete", host, **result.to_dict())

    def on_step_retry(
        self,
        host: str,
        step: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        self._emit(
            "step_retry",
            host,
            step=step,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error,
            delay=round(delay, 1),
        )

    def on_host_complete(self, host: str, report: RunReport) -> None:
        self._emit(
            "host_complete",
            host,
            success=report.success,
            halted=report.halted,
            ok=report.ok_count,
            changed=report.changed_count,
            failed=report.failed_count,
            skipped=report.skipped_count,
            duration=round(report.duration, 3),
        )

    def on_execution_complete(
        self,
        total: int,
        successful: int,
        failed: int,
        duration: float,
    ) -> None:
        self._emit(
            "execution_complete",
            "*",
            total=total,
            successful=successful,
            failed=failed,
            duration=round(duration, 3),
        )


class TextProgressReporter(ProgressReporter):
    """Reports progress as colored, human-readable lines."""

    def __init__(self, output: Any = None, show_hosts: bool = True) -> None:
        """Initialize text progress reporter.

        Args:
            output: Output stream (defaults to sys.stdout)
            show_hosts: Prefix each step line with its host name
        """
        self.console = Console(file=output or sys.stdout, highlight=False)
        self.show_hosts = show_hosts

    def on_execution_start(self, total_hosts: int, playbook: str) -> None:
        self.console.print(f"[bold]Running {playbook} on {total_hosts} host(s)[/bold]")

    def on_host_start(self, host: str) -> None:
        # Per-step lines carry the host name
        pass

    def on_step_complete(self, host: str, result: TaskResult) -> None:
        line = Text()
        if self.show_hosts:
            line.append(f"[{host}] ", style="dim")
        line.append(f"{result.name}: ")
        line.append(result.outcome.value, style=OUTCOME_STYLES[result.outcome])
        if result.error:
            line.append(f" ({result.error})", style="red")
        self.console.print(line)

    def on_step_retry(
        self,
        host: str,
        step: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        line = Text("  ")
        line.append("⟳ ", style="yellow")
        line.append(f"[{host}] {step}: retrying in {delay:.0f}s (attempt {attempt}/{max_attempts}): {error}")
        self.console.print(line)

    def on_host_complete(self, host: str, report: RunReport) -> None:
        style = "green" if report.success else "bold red"
        self.console.print(Text(report.format_summary(), style=style))

    def on_execution_complete(
        self,
        total: int,
        successful: int,
        failed: int,
        duration: float,
    ) -> None:
        if failed == 0:
            self.console.print(f"Completed: {successful}/{total} host(s) succeeded in {duration:.2f}s")
        else:
            self.console.print(
                f"[bold red]Completed: {successful}/{total} host(s) succeeded, "
                f"{failed} failed in {duration:.2f}s[/bold red]"
            )


class NullProgressReporter(ProgressReporter):
    """No-op progress reporter that discards all events."""

    def on_execution_start(self, total_hosts: int, playbook: str) -> None:
        pass

    def on_host_start(self, host: str) -> None:
        pass

    def on_step_complete(self, host: str, result: TaskResult) -> None:
        pass

    def on_step_retry(
        self,
        host: str,
        step: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        pass

    def on_host_complete(self, host: str, report: RunReport) -> None:
        pass

    def on_execution_complete(
        self,
        total: int,
        successful: int,
        failed: int,
        duration: float,
    ) -> None:
        pass


def create_progress_reporter(
    enabled: bool,
    json_format: bool = False,
    output: Any = None,
) -> ProgressReporter:
    """Create a progress reporter.

    Args:
        enabled: Whether progress reporting is enabled
        json_format: Use NDJSON events instead of text
        output: Output stream

    Returns:
        ProgressReporter instance
    """
    if not enabled:
        return NullProgressReporter()

    if json_format:
        return JsonProgressReporter(output)
    return TextProgressReporter(output)
