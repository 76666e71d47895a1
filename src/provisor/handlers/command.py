"""shell-command: run an arbitrary shell script on the host.

This is the escape hatch for work no other handler models. It cannot know
whether the script already ran, so it always reports a change, and it is
flagged non-idempotent so the engine never re-runs it on its own. ``creates``
lets a task declare a path whose existence means the work is done.
"""

import shlex
from collections.abc import Mapping
from typing import Any

from ..connection import Connection
from ..exceptions import ApplyError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta


def build_command(parameters: Mapping[str, Any]) -> str:
    """Assemble the command line from ``cmd`` plus chdir/executable/environment."""
    script = parameters["cmd"]
    executable = parameters.get("executable")
    command = f"{shlex.quote(executable)} -c {shlex.quote(script)}" if executable else script
    env = parameters.get("environment") or {}
    if env:
        exports = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in env.items())
        command = f"export {exports}; {command}"
    if parameters.get("chdir"):
        command = f"cd {shlex.quote(parameters['chdir'])} && {command}"
    return command


class ShellCommandHandler(TaskHandler):
    name = "shell-command"
    idempotent = False
    required = ("cmd",)
    optional = ("chdir", "creates", "removes", "executable", "environment")

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        if parameters.get("creates"):
            result = await connection.execute(f"test -e {shlex.quote(parameters['creates'])}")
            if result.ok:
                return DesiredStateDelta.none()
        if parameters.get("removes"):
            result = await connection.execute(f"test -e {shlex.quote(parameters['removes'])}")
            if not result.ok:
                return DesiredStateDelta.none()
        return DesiredStateDelta.of("command will run")

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        result = await connection.execute(build_command(parameters))
        output = {"stdout": result.stdout, "stderr": result.stderr, "rc": result.exit_code}
        if not result.ok:
            message = result.stderr.strip() or result.stdout.strip() or "no output"
            raise ApplyError(f"Command exited {result.exit_code}: {message}", **output)
        first_line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        return ApplyOutcome(changed=True, detail=first_line, facts=output)
