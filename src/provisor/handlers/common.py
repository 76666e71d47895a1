"""Helpers shared by the built-in handlers."""

import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..connection import Connection, command_failure, format_mode
from ..exceptions import ParameterError, ProbeError
from ..types import CommandResult

TRUE_STRINGS = {"yes", "true", "on", "1", "y"}
FALSE_STRINGS = {"no", "false", "off", "0", "n", ""}


@dataclass
class PathStat:
    """Subset of ``stat`` output the handlers compare against."""

    kind: str
    owner: str
    group: str
    mode: str

    @property
    def is_dir(self) -> bool:
        return self.kind == "directory"

    @property
    def is_file(self) -> bool:
        return self.kind.startswith("regular")


async def run(connection: Connection, command: str, message: str, **kwargs: Any) -> CommandResult:
    """Execute ``command`` and raise if it exits non-zero."""
    result = await connection.execute(command, **kwargs)
    if not result.ok:
        raise command_failure(message, result)
    return result


async def stat_path(connection: Connection, path: str) -> PathStat | None:
    """Stat ``path`` on the host, or None when it does not exist."""
    quoted = shlex.quote(path)
    result = await connection.execute(f"test -e {quoted} || exit 44; stat -c '%F|%U|%G|%a' {quoted}")
    if result.exit_code == 44:
        return None
    if not result.ok:
        raise ProbeError(f"Cannot stat {path}: {result.stderr.strip()}", path=path)
    kind, owner, group, mode = result.stdout.strip().split("|")
    return PathStat(kind=kind, owner=owner, group=group, mode=format_mode(mode))


def attribute_drift(current: PathStat, parameters: Mapping[str, Any]) -> list[str]:
    """Describe every owner/group/mode difference from the requested values."""
    reasons = []
    owner = parameters.get("owner")
    group = parameters.get("group")
    mode = parameters.get("mode")
    if owner and current.owner != owner:
        reasons.append(f"owner {current.owner} -> {owner}")
    if group and current.group != group:
        reasons.append(f"group {current.group} -> {group}")
    if mode is not None and current.mode != format_mode(mode):
        reasons.append(f"mode {current.mode} -> {format_mode(mode)}")
    return reasons


async def fix_attributes(
    connection: Connection, path: str, parameters: Mapping[str, Any], recurse: bool = False
) -> None:
    """Apply the requested owner, group and mode to an existing path."""
    quoted = shlex.quote(path)
    flag = "-R " if recurse else ""
    owner = parameters.get("owner")
    group = parameters.get("group")
    if owner or group:
        spec = f"{owner or ''}:{group}" if group else owner
        await run(connection, f"chown {flag}{shlex.quote(spec)} {quoted}", f"Failed to chown {path}")
    if parameters.get("mode") is not None:
        mode = format_mode(parameters["mode"])
        await run(connection, f"chmod {flag}{mode} {quoted}", f"Failed to chmod {path}")


def as_bool(value: Any, name: str = "value") -> bool:
    """Interpret YAML-ish truthy strings (``yes``, ``no``) as booleans."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    text = str(value).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    raise ParameterError(f"{name} must be a boolean, got {value!r}")


def as_list(value: Any) -> list[str]:
    """Accept a list, a comma separated string or nothing."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]
