"""process-supervise: run a long-lived process as a transient systemd unit.

Starting a background process with ``nohup ... &`` loses its exit status and
its failures. Here the process runs under ``systemd-run``, so it is
restarted according to ``restart``, its output goes where ``stdout_log`` and
``stderr_log`` say, and the step reports the unit and main PID it started.
A unit that dies right after start fails the step with its last journal
lines.
"""

import asyncio
import logging
import shlex
from collections.abc import Mapping
from typing import Any

from ..connection import Connection
from ..exceptions import ApplyError, ParameterError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta
from .common import run

logger = logging.getLogger(__name__)

STARTUP_CHECK_DELAY = 1.0


def unit_name(name: str) -> str:
    return name if name.endswith(".service") else f"{name}.service"


def systemd_run_command(parameters: Mapping[str, Any]) -> str:
    """Build the ``systemd-run`` invocation for a supervised process."""
    parts = [
        "systemd-run",
        f"--unit={unit_name(parameters['name'])}",
        f"--property=Restart={parameters.get('restart', 'on-failure')}",
        "--collect",
    ]
    if parameters.get("user"):
        parts.append(f"--uid={parameters['user']}")
    if parameters.get("chdir"):
        parts.append(f"--working-directory={parameters['chdir']}")
    for key, value in (parameters.get("environment") or {}).items():
        parts.append(f"--setenv={key}={value}")
    if parameters.get("stdout_log"):
        parts.append(f"--property=StandardOutput=append:{parameters['stdout_log']}")
    if parameters.get("stderr_log"):
        parts.append(f"--property=StandardError=append:{parameters['stderr_log']}")
    parts += ["--", "/bin/sh", "-c", parameters["command"]]
    return " ".join(shlex.quote(str(p)) for p in parts)


class ProcessSuperviseHandler(TaskHandler):
    """Ensure a supervised process is running.

    Parameters:
        name: Unit name (``.service`` is appended when missing)
        command: Shell command the unit runs
        chdir: Working directory
        user: Run the process as this user
        environment: Extra environment variables
        restart: systemd Restart= policy (default on-failure)
        stdout_log, stderr_log: Files that receive the process output
    """

    name = "process-supervise"
    required = ("name", "command")
    optional = ("chdir", "user", "environment", "restart", "stdout_log", "stderr_log")
    choices = {"restart": ("no", "on-failure", "always")}

    def validate(self, parameters: Mapping[str, Any]) -> None:
        super().validate(parameters)
        env = parameters.get("environment")
        if env is not None and not isinstance(env, Mapping):
            raise ParameterError(f"{self.name}: environment must be a mapping")

    async def _status(self, unit: str, connection: Connection) -> tuple[str, int]:
        result = await connection.execute(
            f"systemctl show -p ActiveState -p MainPID {shlex.quote(unit)}"
        )
        props = dict(line.split("=", 1) for line in result.stdout.splitlines() if "=" in line)
        return props.get("ActiveState", "inactive"), int(props.get("MainPID") or 0)

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        unit = unit_name(parameters["name"])
        state, pid = await self._status(unit, connection)
        if state == "active" and pid:
            return DesiredStateDelta.none(unit=unit, pid=pid)
        return DesiredStateDelta.of(f"{unit} is {state}", unit=unit)

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        unit = unit_name(parameters["name"])
        quoted = shlex.quote(unit)
        state, pid = await self._status(unit, connection)
        if state == "active" and pid:
            return ApplyOutcome(changed=False, facts={"unit": unit, "pid": pid})
        if state == "failed":
            await connection.execute(f"systemctl reset-failed {quoted}")

        await run(connection, systemd_run_command(parameters), f"Failed to start {unit}")
        await asyncio.sleep(STARTUP_CHECK_DELAY)

        state, pid = await self._status(unit, connection)
        if state != "active":
            journal = await connection.execute(f"journalctl -u {quoted} -n 20 --no-pager")
            raise ApplyError(
                f"{unit} did not stay running (state {state}): {journal.stdout.strip()[-2000:]}",
                unit=unit,
            )
        logger.info(f"Started {unit} on {connection.name} with pid {pid}")
        return ApplyOutcome(changed=True, detail=f"{unit} pid {pid}", facts={"unit": unit, "pid": pid})
