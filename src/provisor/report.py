"""Run reporting for provisor.

The reporter collects one TaskResult per attempted step on one host and
produces an immutable RunReport with the outcome counts, the halt point and
the first failure. Formatting helpers give the per-step lines and the final
summary the CLI prints.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .types import Outcome, TaskResult

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Outcome of one run against one host.

    Attributes:
        host: Host the run targeted
        results: One TaskResult per attempted step, in execution order
        halted: True when a failure or cancellation stopped the run early
        cancelled: True when the run was cancelled
        duration: Wall time of the run in seconds
    """

    host: str = ""
    results: list[TaskResult] = field(default_factory=list)
    halted: bool = False
    cancelled: bool = False
    duration: float = 0.0

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def ok_count(self) -> int:
        return self._count(Outcome.OK)

    @property
    def changed_count(self) -> int:
        return self._count(Outcome.CHANGED)

    @property
    def failed_count(self) -> int:
        return self._count(Outcome.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(Outcome.SKIPPED)

    @property
    def success(self) -> bool:
        """No step failed and the run was not cancelled."""
        return self.failed_count == 0 and not self.cancelled

    @property
    def first_failure(self) -> TaskResult | None:
        """The earliest failed step, ignored or not."""
        return next((r for r in self.results if r.failed), None)

    @property
    def halting_failure(self) -> TaskResult | None:
        """The failure that stopped the run, if it was stopped by one."""
        if not self.halted:
            return None
        return next((r for r in self.results if r.failed and not r.step.ignore_errors), None)

    @staticmethod
    def format_line(result: TaskResult) -> str:
        """``<step-name>: <outcome>``"""
        return f"{result.name}: {result.outcome.value}"

    def lines(self) -> list[str]:
        return [self.format_line(r) for r in self.results]

    def format_summary(self) -> str:
        """Counts, plus the first failing step and the halt point, errors verbatim."""
        prefix = f"{self.host}: " if self.host else ""
        summary = (
            f"{prefix}ok={self.ok_count} changed={self.changed_count} "
            f"failed={self.failed_count} skipped={self.skipped_count}"
        )
        first, halt = self.first_failure, self.halting_failure
        if first is not None and first is not halt:
            summary += f"\n{prefix}first failure '{first.name}': {first.error}"
        if halt is not None:
            summary += f"\n{prefix}halted at '{halt.name}': {halt.error}"
        elif self.cancelled:
            summary += f"\n{prefix}cancelled"
        elif self.halted:
            summary += f"\n{prefix}halted"
        return summary

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        failure = self.first_failure
        return {
            "host": self.host,
            "success": self.success,
            "halted": self.halted,
            "cancelled": self.cancelled,
            "duration": round(self.duration, 3),
            "stats": {
                "ok": self.ok_count,
                "changed": self.changed_count,
                "failed": self.failed_count,
                "skipped": self.skipped_count,
            },
            "first_failure": failure.to_dict() if failure else None,
            "results": [r.to_dict() for r in self.results],
        }


class RunReporter:
    """Accumulates TaskResults for one host during a run.

    Example:
        >>> reporter = RunReporter("web01")
        >>> reporter.record(result)
        >>> report = reporter.finalize(halted=False)
    """

    def __init__(self, host: str = "") -> None:
        self.host = host
        self.results: list[TaskResult] = []
        self._start = time.monotonic()

    def record(self, result: TaskResult) -> None:
        self.results.append(result)
        log = logger.warning if result.failed else logger.debug
        log(f"[{self.host}] {RunReport.format_line(result)}" + (f" ({result.error})" if result.error else ""))

    def finalize(self, halted: bool = False, cancelled: bool = False) -> RunReport:
        """Freeze the collected results into a RunReport."""
        return RunReport(
            host=self.host,
            results=list(self.results),
            halted=halted or cancelled,
            cancelled=cancelled,
            duration=time.monotonic() - self._start,
        )
