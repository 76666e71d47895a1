"""user-ensure: local account management with useradd/usermod/userdel."""

import shlex
from collections.abc import Mapping
from typing import Any

from ..connection import Connection
from ..exceptions import ProbeError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta
from .common import as_bool, as_list, run


class UserEnsureHandler(TaskHandler):
    """Ensure a user account exists (or not) with the requested attributes.

    Parameters:
        name: Account name
        state: present (default) or absent
        groups: Supplementary groups, list or comma separated
        append: Add to ``groups`` rather than replacing them (default yes)
        shell, home, comment: Account fields
        system: Create a system account
        create_home: Create the home directory (default yes)
    """

    name = "user-ensure"
    required = ("name",)
    optional = ("state", "groups", "append", "shell", "home", "comment", "system", "create_home")
    choices = {"state": ("present", "absent")}

    async def _account(self, username: str, connection: Connection) -> dict[str, Any] | None:
        result = await connection.execute(f"getent passwd {shlex.quote(username)}")
        if result.exit_code == 2:
            return None
        if not result.ok:
            raise ProbeError(f"getent failed for {username}: {result.stderr.strip()}")
        fields = result.stdout.strip().split(":")
        groups = await connection.execute(f"id -nG {shlex.quote(username)}")
        return {
            "uid": int(fields[2]),
            "comment": fields[4],
            "home": fields[5],
            "shell": fields[6],
            "groups": set(groups.stdout.split()) if groups.ok else set(),
        }

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        username = parameters["name"]
        account = await self._account(username, connection)

        if parameters.get("state", "present") == "absent":
            if account is None:
                return DesiredStateDelta.none()
            return DesiredStateDelta.of(f"user {username} exists")

        if account is None:
            return DesiredStateDelta.of(f"user {username} missing")

        reasons = []
        for field in ("shell", "home", "comment"):
            wanted = parameters.get(field)
            if wanted is not None and account[field] != wanted:
                reasons.append(f"{field} {account[field]!r} -> {wanted!r}")

        wanted_groups = set(as_list(parameters.get("groups")))
        missing = wanted_groups - account["groups"]
        if missing:
            reasons.append(f"not in group(s) {', '.join(sorted(missing))}")
        if wanted_groups and not as_bool(parameters.get("append", True), "append"):
            extra = account["groups"] - wanted_groups - {username}
            if extra:
                reasons.append(f"extra group(s) {', '.join(sorted(extra))}")

        if reasons:
            return DesiredStateDelta.of(*reasons, uid=account["uid"])
        return DesiredStateDelta.none(uid=account["uid"], home=account["home"])

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        username = parameters["name"]
        quoted = shlex.quote(username)
        if not (await self.probe(parameters, connection, facts)).has_delta:
            return ApplyOutcome(changed=False)
        account = await self._account(username, connection)

        if parameters.get("state", "present") == "absent":
            await run(connection, f"userdel {quoted}", f"Failed to remove user {username}")
            return ApplyOutcome(changed=True, detail=f"removed user {username}")

        options = []
        for field, flag in (("shell", "-s"), ("home", "-d"), ("comment", "-c")):
            if parameters.get(field) is not None:
                options += [flag, shlex.quote(str(parameters[field]))]
        groups = as_list(parameters.get("groups"))

        if account is None:
            if as_bool(parameters.get("create_home", True), "create_home"):
                options.append("-m")
            if as_bool(parameters.get("system", False), "system"):
                options.append("-r")
            if groups:
                options += ["-G", shlex.quote(",".join(groups))]
            await run(connection, f"useradd {' '.join(options)} {quoted}", f"Failed to create user {username}")
            detail = f"created user {username}"
        else:
            if groups:
                if as_bool(parameters.get("append", True), "append"):
                    options.append("-a")
                options += ["-G", shlex.quote(",".join(groups))]
            await run(connection, f"usermod {' '.join(options)} {quoted}", f"Failed to modify user {username}")
            detail = f"modified user {username}"

        return ApplyOutcome(changed=True, detail=detail)
