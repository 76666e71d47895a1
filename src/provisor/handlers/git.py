"""git-checkout: clone a repository or move an existing clone to a ref."""

import re
import shlex
from collections.abc import Mapping
from typing import Any

from ..connection import Connection
from ..exceptions import ApplyError, ProbeError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta
from .common import as_bool, run

SHA_RE = re.compile(r"^[0-9a-f]{40}$")


class GitCheckoutHandler(TaskHandler):
    """Ensure ``dest`` is a clone of ``repo`` checked out at ``version``.

    Parameters:
        repo: Repository URL
        dest: Working tree path on the host
        version: Branch, tag or commit (default HEAD)
        force: Discard local modifications (default no)
        accept_hostkey: Accept an unknown SSH host key for the remote
        update: Move an existing clone to the latest ``version`` (default yes)
        depth: Shallow clone depth
    """

    name = "git-checkout"
    required = ("repo", "dest")
    optional = ("version", "force", "accept_hostkey", "update", "depth")

    def _git(self, parameters: Mapping[str, Any]) -> str:
        if as_bool(parameters.get("accept_hostkey", False), "accept_hostkey"):
            return "GIT_SSH_COMMAND='ssh -o StrictHostKeyChecking=accept-new' git"
        return "git"

    async def _remote(self, parameters: Mapping[str, Any], connection: Connection) -> tuple[str, str | None]:
        """Resolve ``version`` on the remote to (sha, branch-or-None)."""
        version = str(parameters.get("version", "HEAD"))
        if SHA_RE.match(version):
            return version, None
        result = await connection.execute(
            f"{self._git(parameters)} ls-remote {shlex.quote(parameters['repo'])} {shlex.quote(version)}"
        )
        if not result.ok:
            raise ProbeError(f"git ls-remote failed: {result.stderr.strip()}", repo=parameters["repo"])
        refs = dict(
            reversed(line.split("\t", 1)) for line in result.stdout.splitlines() if "\t" in line
        )
        for ref in (f"refs/heads/{version}", f"refs/tags/{version}^{{}}", f"refs/tags/{version}", version):
            if ref in refs:
                branch = version if ref.startswith("refs/heads/") else None
                return refs[ref], branch
        raise ProbeError(f"Ref {version} not found in {parameters['repo']}", repo=parameters["repo"])

    async def _local(self, dest: str, connection: Connection) -> tuple[str | None, bool]:
        """Return (HEAD sha or None when not a clone, working tree dirty)."""
        quoted = shlex.quote(dest)
        head = await connection.execute(f"git -C {quoted} rev-parse HEAD")
        if not head.ok:
            return None, False
        status = await connection.execute(f"git -C {quoted} status --porcelain --untracked-files=no")
        return head.stdout.strip(), bool(status.stdout.strip())

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        dest = parameters["dest"]
        before, dirty = await self._local(dest, connection)
        if before is None:
            return DesiredStateDelta.of(f"{dest} is not a clone")
        if not as_bool(parameters.get("update", True), "update"):
            return DesiredStateDelta.none(before=before, after=before)

        after, _ = await self._remote(parameters, connection)
        reasons = []
        if before != after:
            reasons.append(f"{before[:8]} -> {after[:8]}")
        if dirty and as_bool(parameters.get("force", False), "force"):
            reasons.append("local modifications")
        if reasons:
            return DesiredStateDelta.of(*reasons, before=before, after=after)
        return DesiredStateDelta.none(before=before, after=after)

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        dest = parameters["dest"]
        quoted = shlex.quote(dest)
        git = self._git(parameters)
        force = as_bool(parameters.get("force", False), "force")

        before, dirty = await self._local(dest, connection)
        if before is None:
            depth = f"--depth {int(parameters['depth'])} " if parameters.get("depth") else ""
            await run(
                connection,
                f"{git} clone {depth}{shlex.quote(parameters['repo'])} {quoted}",
                f"Failed to clone {parameters['repo']}",
            )
        elif not as_bool(parameters.get("update", True), "update"):
            return ApplyOutcome(changed=False, facts={"before": before, "after": before})
        else:
            if dirty and not force:
                raise ApplyError(f"{dest} has local modifications; set force to discard them", dest=dest)
            await run(connection, f"{git} -C {quoted} fetch --tags --prune origin", f"Failed to fetch into {dest}")

        sha, branch = await self._remote(parameters, connection)
        flag = "--force " if force else ""
        if branch:
            checkout = f"git -C {quoted} checkout {flag}-B {shlex.quote(branch)} {sha}"
        else:
            checkout = f"git -C {quoted} checkout {flag}{sha}"
        await run(connection, checkout, f"Failed to check out {sha[:8]} in {dest}")
        if force:
            await run(connection, f"git -C {quoted} reset --hard {sha}", f"Failed to reset {dest}")

        after, _ = await self._local(dest, connection)
        return ApplyOutcome(
            changed=before != after or dirty,
            detail=f"{(before or 'none')[:8]} -> {(after or '')[:8]}",
            facts={"before": before, "after": after},
        )
