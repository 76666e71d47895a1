"""Multi-host execution for provisor.

Each selected host gets its own ExecutionEngine with its own connection,
fact cache, bindings and report. Hosts run concurrently, at most
``parallel`` at a time; nothing mutable is shared between them.

Every plan is built before the first connection opens, so a build-time
error in any host's plan aborts the run with no remote side effects.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .bindings import Bindings
from .config import RunConfig
from .connection import Connection, connection_for_host
from .engine import ExecutionEngine
from .exceptions import BuildError
from .inventory import Inventory
from .loader import Play
from .plan import Plan, PlanBuilder
from .progress import NullProgressReporter, ProgressReporter
from .registry import HandlerRegistry, default_registry
from .report import RunReport
from .types import HostConfig

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[HostConfig], Connection]
SUPPORTED_CONNECTIONS = ("local", "ssh")


@dataclass
class ExecutionResults:
    """Reports from every host, per play.

    Attributes:
        reports: (play name, host name) -> RunReport, in completion order
        duration: Wall time of the whole run
        cancelled: True when the run was cancelled before it finished
    """

    reports: dict[tuple[str, str], RunReport] = field(default_factory=dict)
    duration: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.success for r in self.reports.values())

    @property
    def failed_hosts(self) -> list[str]:
        return sorted({host for (_, host), r in self.reports.items() if not r.success})

    @property
    def hosts(self) -> list[str]:
        return sorted({host for _, host in self.reports})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "duration": round(self.duration, 3),
            "plays": [
                {"play": play, **report.to_dict()} for (play, _), report in self.reports.items()
            ],
        }


def host_bindings(play: Play, host: HostConfig, inventory: Inventory | None, extra_vars: Mapping[str, Any]) -> Bindings:
    """Layer the variables one host sees for one play."""
    inventory_vars = inventory.host_variables(host.name) if inventory else dict(host.vars)
    inventory_vars.setdefault("inventory_hostname", host.name)
    return Bindings(
        defaults=play.defaults,
        inventory=inventory_vars,
        play=play.vars,
        extra=dict(extra_vars),
    )


class PlaybookExecutor:
    """Runs plays across the hosts of an inventory.

    Example:
        >>> executor = PlaybookExecutor(RunConfig(parallel=5))
        >>> results = await executor.run(plays, inventory)
        >>> results.success
        True
    """

    def __init__(
        self,
        config: RunConfig | None = None,
        registry: HandlerRegistry | None = None,
        progress: ProgressReporter | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.config = config or RunConfig()
        self.registry = registry or default_registry()
        self.progress = progress or NullProgressReporter()
        self.connection_factory = connection_factory or self._default_connection
        self.builder = PlanBuilder(self.registry)
        self._engines: dict[str, ExecutionEngine] = {}
        self._cancelled = False

    def _default_connection(self, host: HostConfig) -> Connection:
        return connection_for_host(
            host,
            connect_timeout=self.config.connect_timeout,
            command_timeout=self.config.command_timeout,
            known_hosts=self.config.known_hosts_option(),
        )

    def build(
        self,
        play: Play,
        hosts: Mapping[str, HostConfig],
        inventory: Inventory | None = None,
        extra_vars: Mapping[str, Any] | None = None,
    ) -> dict[str, tuple[Plan, Bindings]]:
        """Build a plan per host.

        Raises:
            BuildError: On the first host whose plan cannot be built
        """
        plans = {}
        for name, host in hosts.items():
            if host.ansible_connection not in SUPPORTED_CONNECTIONS:
                raise BuildError(
                    f"Host '{name}': unsupported connection type '{host.ansible_connection}'",
                    host=name,
                )
            bindings = host_bindings(play, host, inventory, extra_vars or {})
            plans[name] = (self.builder.build_plan(play.tasks, bindings, play.handlers), bindings)
        return plans

    def cancel(self) -> None:
        """Stop the run at the next step boundary.

        Running engines fail their next step; hosts still waiting for a
        parallel slot fail their first step without running it, and later
        plays are not started.
        """
        self._cancelled = True
        for engine in self._engines.values():
            engine.cancel()

    async def run(
        self,
        plays: list[Play],
        inventory: Inventory,
        limit: Callable[[dict[str, HostConfig]], dict[str, HostConfig]] | None = None,
        extra_vars: Mapping[str, Any] | None = None,
    ) -> ExecutionResults:
        """Run each play in turn; hosts within a play run concurrently.

        A host that fails in one play is not targeted by later plays.
        """
        start = time.monotonic()
        results = ExecutionResults()
        failed: set[str] = set()

        selections = []
        for play in plays:
            hosts = {
                name: inventory.resolve_host(name) for name in inventory.select(play.hosts)
            }
            if limit is not None:
                hosts = limit(hosts)
            selections.append((play, self.build(play, hosts, inventory, extra_vars)))

        total = len({h for _, plans in selections for h in plans})
        self.progress.on_execution_start(total, plays[0].source.name if plays and plays[0].source else "playbook")

        for play, plans in selections:
            if self._cancelled:
                logger.warning(f"Run cancelled; not starting play '{play.name}'")
                break
            plans = {h: p for h, p in plans.items() if h not in failed}
            if not plans:
                logger.warning(f"Play '{play.name}': no hosts to run on")
                continue
            logger.info(f"Play '{play.name}' on {len(plans)} host(s)")
            hosts = {name: inventory.resolve_host(name) for name in plans}
            reports = await self._run_play(plans, hosts)
            for name, report in reports.items():
                results.reports[(play.name, name)] = report
                if not report.success:
                    failed.add(name)

        results.duration = time.monotonic() - start
        results.cancelled = self._cancelled
        succeeded = total - len(failed)
        self.progress.on_execution_complete(total, succeeded, len(failed), results.duration)
        return results

    async def _run_play(
        self,
        plans: Mapping[str, tuple[Plan, Bindings]],
        hosts: Mapping[str, HostConfig],
    ) -> dict[str, RunReport]:
        semaphore = asyncio.Semaphore(self.config.parallel)

        async def run_host(name: str) -> RunReport:
            plan, bindings = plans[name]
            async with semaphore:
                engine = ExecutionEngine(
                    self.connection_factory(hosts[name]),
                    registry=self.registry,
                    retry_config=self.config.retry_config(),
                    check_mode=self.config.check_mode,
                    progress=self.progress,
                    host=name,
                )
                self._engines[name] = engine
                if self._cancelled:
                    engine.cancel()
                self.progress.on_host_start(name)
                try:
                    report = await engine.run(plan.steps, bindings, plan.handlers)
                finally:
                    self._engines.pop(name, None)
                self.progress.on_host_complete(name, report)
                return report

        names = list(plans)
        reports = await asyncio.gather(*(run_host(n) for n in names))
        return dict(zip(names, reports))
