"""package-ensure: Debian/Ubuntu packages through apt-get.

The installed package list is read once per run through the fact cache and
shared by every package task on the host; it is invalidated after any
install or removal so later probes see the new state.
"""

import logging
import shlex
from collections.abc import Mapping
from typing import Any

from ..connection import Connection
from ..exceptions import ParameterError, ProbeError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta
from .common import as_bool, as_list, run

logger = logging.getLogger(__name__)

APT_ENV = "DEBIAN_FRONTEND=noninteractive"
APT_GET = (
    f"{APT_ENV} apt-get -y -q "
    "-o Dpkg::Options::=--force-confdef -o Dpkg::Options::=--force-confold"
)
PACKAGE_CACHE = "/var/cache/apt/pkgcache.bin"

UPGRADE_COMMANDS = {
    "yes": "upgrade",
    "safe": "upgrade",
    "dist": "dist-upgrade",
    "full": "dist-upgrade",
}


def parse_installed(output: str) -> set[str]:
    """Parse ``dpkg-query -W -f='${Package}\\t${Status}\\n'`` output."""
    installed = set()
    for line in output.splitlines():
        if "\t" not in line:
            continue
        name, status = line.split("\t", 1)
        if status.strip().endswith(" installed"):
            installed.add(name.split(":")[0])
    return installed


def count_simulated(output: str) -> int:
    """Count the packages an ``apt-get -s`` run would install or upgrade."""
    return sum(1 for line in output.splitlines() if line.startswith("Inst "))


class PackageEnsureHandler(TaskHandler):
    """Install, upgrade or remove packages in one batch.

    Parameters:
        name: Package name or list of names
        state: present (default), latest or absent
        update_cache: Refresh the package index when it is older than
            ``cache_valid_time`` seconds (default 3600)
        upgrade: no (default), yes/safe or dist/full
    """

    name = "package-ensure"
    optional = ("name", "state", "update_cache", "cache_valid_time", "upgrade")
    choices = {
        "state": ("present", "latest", "absent"),
        "upgrade": ("no", "yes", "safe", "dist", "full", True, False),
    }

    def validate(self, parameters: Mapping[str, Any]) -> None:
        super().validate(parameters)
        if not (
            as_list(parameters.get("name"))
            or as_bool(parameters.get("update_cache"), "update_cache")
            or self._upgrade_mode(parameters)
        ):
            raise ParameterError(f"{self.name}: one of name, update_cache or upgrade is required")

    def _upgrade_mode(self, parameters: Mapping[str, Any]) -> str | None:
        upgrade = parameters.get("upgrade", "no")
        if upgrade is True:
            upgrade = "yes"
        if upgrade in (False, None, "no"):
            return None
        return UPGRADE_COMMANDS[upgrade]

    async def installed(self, connection: Connection, facts: FactCache) -> set[str]:
        async def list_packages() -> set[str]:
            result = await connection.execute("dpkg-query -W -f='${Package}\\t${Status}\\n'")
            if not result.ok:
                raise ProbeError(f"Cannot list installed packages: {result.stderr.strip()}")
            return parse_installed(result.stdout)

        return await facts.get_or_compute("packages", list_packages)

    async def _cache_age(self, connection: Connection) -> int:
        result = await connection.execute(
            f"echo $(date +%s) $(stat -c %Y {PACKAGE_CACHE} 2>/dev/null || echo 0)"
        )
        now, mtime = (int(v) for v in result.stdout.split())
        return now - mtime

    async def _pending(self, command: str, connection: Connection, facts: FactCache) -> int:
        async def simulate() -> int:
            result = await connection.execute(f"{APT_ENV} apt-get -s -q {command}")
            if not result.ok:
                raise ProbeError(f"apt-get -s {command} failed: {result.stderr.strip()}")
            return count_simulated(result.stdout)

        return await facts.get_or_compute(f"apt:{command}", simulate)

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        names = as_list(parameters.get("name"))
        state = parameters.get("state", "present")
        reasons = []

        if as_bool(parameters.get("update_cache"), "update_cache"):
            max_age = int(parameters.get("cache_valid_time", 3600))
            age = await self._cache_age(connection)
            if age > max_age:
                reasons.append(f"package index is {age}s old")

        upgrade = self._upgrade_mode(parameters)
        if upgrade:
            pending = await self._pending(upgrade, connection, facts)
            if pending:
                reasons.append(f"{pending} package(s) to {upgrade}")

        if names:
            installed = await self.installed(connection, facts)
            if state == "absent":
                present = [n for n in names if n in installed]
                if present:
                    reasons.append(f"remove {', '.join(present)}")
            else:
                missing = [n for n in names if n not in installed]
                if missing:
                    reasons.append(f"install {', '.join(missing)}")
                if state == "latest":
                    quoted = " ".join(shlex.quote(n) for n in names if n in installed)
                    if quoted and await self._pending(f"install {quoted}", connection, facts):
                        reasons.append("newer versions available")

        return DesiredStateDelta.of(*reasons) if reasons else DesiredStateDelta.none()

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        delta = await self.probe(parameters, connection, facts)
        if not delta.has_delta:
            return ApplyOutcome(changed=False)

        names = as_list(parameters.get("name"))
        state = parameters.get("state", "present")
        done = []
        try:
            if as_bool(parameters.get("update_cache"), "update_cache"):
                await run(connection, f"{APT_ENV} apt-get update -q", "apt-get update failed")
                done.append("updated package index")

            upgrade = self._upgrade_mode(parameters)
            if upgrade:
                await run(connection, f"{APT_GET} {upgrade}", f"apt-get {upgrade} failed")
                done.append(upgrade)

            if names:
                installed = await self.installed(connection, facts)
                if state == "absent":
                    targets = [n for n in names if n in installed]
                    if targets:
                        quoted = " ".join(shlex.quote(n) for n in targets)
                        await run(connection, f"{APT_GET} remove {quoted}", "apt-get remove failed")
                        done.append(f"removed {', '.join(targets)}")
                else:
                    targets = names if state == "latest" else [n for n in names if n not in installed]
                    if targets:
                        quoted = " ".join(shlex.quote(n) for n in targets)
                        await run(connection, f"{APT_GET} install {quoted}", "apt-get install failed")
                        done.append(f"installed {', '.join(targets)}")
        finally:
            facts.invalidate(key="packages")
            facts.invalidate(prefix="apt:")

        logger.debug(f"package-ensure on {connection.name}: {'; '.join(done)}")
        return ApplyOutcome(changed=bool(done), detail="; ".join(done))
