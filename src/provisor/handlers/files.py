"""File system handlers.

These handlers manage directories, file contents and file attributes on the
target host. Content is compared byte for byte against what is on the host,
and ownership and mode against ``stat``, so a second run over an unchanged
host reports no change.
"""

import shlex
from collections.abc import Mapping
from typing import Any

from ..connection import Connection, format_mode
from ..exceptions import ProbeError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta
from .common import as_bool, attribute_drift, fix_attributes, run, stat_path

ATTRIBUTES = ("owner", "group", "mode")


class DirectoryEnsureHandler(TaskHandler):
    """Ensure a directory exists with the given owner, group and mode."""

    name = "directory-ensure"
    required = ("path",)
    optional = ("state",) + ATTRIBUTES
    choices = {"state": ("present", "absent")}

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        path = parameters["path"]
        current = await stat_path(connection, path)
        if parameters.get("state", "present") == "absent":
            return DesiredStateDelta.of(f"{path} exists") if current else DesiredStateDelta.none()
        if current is None:
            return DesiredStateDelta.of(f"{path} missing")
        if not current.is_dir:
            raise ProbeError(f"{path} exists but is a {current.kind}", path=path)
        reasons = attribute_drift(current, parameters)
        return DesiredStateDelta.of(*reasons) if reasons else DesiredStateDelta.none()

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        path = parameters["path"]
        if not (await self.probe(parameters, connection, facts)).has_delta:
            return ApplyOutcome(changed=False)
        quoted = shlex.quote(path)
        if parameters.get("state", "present") == "absent":
            await run(connection, f"rm -rf -- {quoted}", f"Failed to remove {path}")
            return ApplyOutcome(changed=True, detail=f"removed {path}")

        current = await stat_path(connection, path)
        if current is None:
            await run(connection, f"mkdir -p -- {quoted}", f"Failed to create {path}")
            detail = f"created {path}"
        else:
            detail = f"updated attributes of {path}"
        await fix_attributes(connection, path, parameters)
        return ApplyOutcome(changed=True, detail=detail)


class FileContentEnsureHandler(TaskHandler):
    """Ensure a file holds exactly ``content``, with optional owner/group/mode.

    The file is written through ``Connection.put_file``: staged privately and
    moved into place with its final ownership and mode in one step.
    """

    name = "file-content-ensure"
    required = ("path", "content")
    optional = ATTRIBUTES

    def desired_content(self, parameters: Mapping[str, Any]) -> bytes:
        content = parameters["content"]
        if isinstance(content, bytes):
            return content
        return str(content).encode()

    async def _current_content(self, path: str, connection: Connection) -> bytes | None:
        try:
            return await connection.fetch_file(path)
        except FileNotFoundError:
            return None

    def _dest(self, parameters: Mapping[str, Any]) -> str:
        return parameters["path"]

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        path = self._dest(parameters)
        current = await self._current_content(path, connection)
        if current is None:
            return DesiredStateDelta.of(f"{path} missing")

        reasons = []
        if current != self.desired_content(parameters):
            reasons.append(f"{path} content differs")
        if any(parameters.get(a) is not None for a in ATTRIBUTES):
            current_stat = await stat_path(connection, path)
            if current_stat is not None:
                reasons += attribute_drift(current_stat, parameters)
        return DesiredStateDelta.of(*reasons) if reasons else DesiredStateDelta.none()

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        path = self._dest(parameters)
        data = self.desired_content(parameters)
        current = await self._current_content(path, connection)

        if current != data:
            await connection.put_file(
                data,
                path,
                owner=parameters.get("owner"),
                mode=parameters.get("mode"),
                group=parameters.get("group"),
            )
            return ApplyOutcome(changed=True, detail=f"wrote {len(data)} bytes to {path}")

        current_stat = await stat_path(connection, path)
        if current_stat is None or not attribute_drift(current_stat, parameters):
            return ApplyOutcome(changed=False)
        await fix_attributes(connection, path, parameters)
        return ApplyOutcome(changed=True, detail=f"updated attributes of {path}")


class FileAttributesEnsureHandler(TaskHandler):
    """Ensure ownership and mode of an existing path.

    ``state: touch`` creates an empty file when the path is missing;
    ``recurse`` applies owner and group to everything below a directory.
    """

    name = "file-attributes-ensure"
    required = ("path",)
    optional = ("state", "recurse") + ATTRIBUTES
    choices = {"state": ("file", "touch")}

    async def _recursive_drift(self, path: str, parameters: Mapping[str, Any], connection: Connection) -> bool:
        tests = []
        if parameters.get("owner"):
            tests.append(f"! -user {shlex.quote(parameters['owner'])}")
        if parameters.get("group"):
            tests.append(f"! -group {shlex.quote(parameters['group'])}")
        if parameters.get("mode") is not None:
            tests.append(f"! -perm {format_mode(parameters['mode'])}")
        if not tests:
            return False
        expression = " -o ".join(tests)
        result = await connection.execute(f"find {shlex.quote(path)} \\( {expression} \\) -print -quit")
        if not result.ok:
            raise ProbeError(f"Cannot inspect {path}: {result.stderr.strip()}", path=path)
        return bool(result.stdout.strip())

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        path = parameters["path"]
        current = await stat_path(connection, path)
        if current is None:
            if parameters.get("state", "file") == "touch":
                return DesiredStateDelta.of(f"{path} missing")
            raise ProbeError(f"{path} does not exist", path=path)

        if as_bool(parameters.get("recurse", False), "recurse"):
            if await self._recursive_drift(path, parameters, connection):
                return DesiredStateDelta.of(f"attributes below {path} differ")
            return DesiredStateDelta.none()

        reasons = attribute_drift(current, parameters)
        return DesiredStateDelta.of(*reasons) if reasons else DesiredStateDelta.none()

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        path = parameters["path"]
        if not (await self.probe(parameters, connection, facts)).has_delta:
            return ApplyOutcome(changed=False)
        created = False
        if await stat_path(connection, path) is None:
            await run(connection, f"touch -- {shlex.quote(path)}", f"Failed to create {path}")
            created = True
        await fix_attributes(
            connection, path, parameters, recurse=as_bool(parameters.get("recurse", False), "recurse")
        )
        return ApplyOutcome(changed=True, detail=f"created {path}" if created else f"updated attributes of {path}")
