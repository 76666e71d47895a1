"""service-ensure: systemd unit state through systemctl."""

import shlex
from collections.abc import Mapping
from typing import Any

from ..connection import Connection
from ..exceptions import ProbeError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta
from .common import as_bool, run

ACTIONS = {"started": "start", "stopped": "stop", "restarted": "restart", "reloaded": "reload"}


async def unit_status(name: str, connection: Connection) -> tuple[str, str]:
    """Return (ActiveState, UnitFileState) for a unit."""
    result = await connection.execute(
        f"systemctl show -p LoadState -p ActiveState -p UnitFileState {shlex.quote(name)}"
    )
    if not result.ok:
        raise ProbeError(f"systemctl show {name} failed: {result.stderr.strip()}", service=name)
    props = dict(line.split("=", 1) for line in result.stdout.splitlines() if "=" in line)
    if props.get("LoadState") == "not-found":
        raise ProbeError(f"Service {name} not found", service=name)
    return props.get("ActiveState", "unknown"), props.get("UnitFileState", "")


class ServiceEnsureHandler(TaskHandler):
    """Ensure a service is running, stopped, restarted or reloaded.

    ``restarted`` and ``reloaded`` always report a change: they are actions
    rather than states, and are mostly used from deferred handlers.
    """

    name = "service-ensure"
    required = ("name",)
    optional = ("state", "enabled")
    choices = {"state": tuple(ACTIONS)}

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        name = parameters["name"]
        active, unit_file = await unit_status(name, connection)
        reasons = []

        state = parameters.get("state")
        if state == "started" and active != "active":
            reasons.append(f"{name} is {active}")
        elif state == "stopped" and active == "active":
            reasons.append(f"{name} is running")
        elif state in ("restarted", "reloaded"):
            reasons.append(f"{name} will be {state}")

        if "enabled" in parameters:
            enabled = as_bool(parameters["enabled"], "enabled")
            if enabled and unit_file not in ("enabled", "static", "enabled-runtime"):
                reasons.append(f"{name} is {unit_file or 'not enabled'}")
            elif not enabled and unit_file == "enabled":
                reasons.append(f"{name} is enabled")

        if reasons:
            return DesiredStateDelta.of(*reasons, status=active)
        return DesiredStateDelta.none(status=active)

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        name = parameters["name"]
        quoted = shlex.quote(name)
        active, unit_file = await unit_status(name, connection)
        done = []

        if "enabled" in parameters:
            enabled = as_bool(parameters["enabled"], "enabled")
            if enabled and unit_file not in ("enabled", "static", "enabled-runtime"):
                await run(connection, f"systemctl enable {quoted}", f"Failed to enable {name}")
                done.append("enabled")
            elif not enabled and unit_file == "enabled":
                await run(connection, f"systemctl disable {quoted}", f"Failed to disable {name}")
                done.append("disabled")

        state = parameters.get("state")
        if (
            (state == "started" and active != "active")
            or (state == "stopped" and active == "active")
            or state in ("restarted", "reloaded")
        ):
            action = ACTIONS[state]
            await run(connection, f"systemctl {action} {quoted}", f"Failed to {action} {name}")
            done.append(state)

        status, _ = await unit_status(name, connection)
        return ApplyOutcome(changed=bool(done), detail=f"{name} {', '.join(done)}", facts={"status": status})
