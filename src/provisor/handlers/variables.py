"""Handlers that publish values into the run's bindings.

``set-fact`` binds its parameters directly. ``credential-ensure`` writes a
KEY=VALUE credentials file with a restrictive mode in a single upload and
publishes the fields it wrote, so later tasks use them without reading the
file back and parsing it.
"""

import re
from collections.abc import Mapping
from typing import Any

from ..connection import Connection
from ..exceptions import ParameterError
from ..facts import FactCache
from ..registry import TaskHandler
from ..types import ApplyOutcome, DesiredStateDelta
from .common import attribute_drift, fix_attributes, stat_path

NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SetFactHandler(TaskHandler):
    """Bind each parameter as a runtime fact. Never touches the host."""

    name = "set-fact"

    def validate(self, parameters: Mapping[str, Any]) -> None:
        if not parameters:
            raise ParameterError(f"{self.name}: at least one fact is required")
        for key in parameters:
            if not NAME_RE.match(str(key)):
                raise ParameterError(f"{self.name}: invalid fact name {key!r}")

    def declared_facts(self, parameters: Mapping[str, Any]) -> set[str]:
        return {str(key) for key in parameters}

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        return DesiredStateDelta.none(**parameters)

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        return ApplyOutcome(changed=False, facts=dict(parameters))


def format_credentials(fields: Mapping[str, Any]) -> bytes:
    """Serialise fields as ``KEY=value`` lines, keys upper-cased."""
    lines = [f"{str(key).upper()}={value}" for key, value in fields.items()]
    return ("\n".join(lines) + "\n").encode()


def parse_credentials(data: bytes) -> dict[str, str]:
    """Parse a KEY=value file; blank lines and ``#`` comments are ignored."""
    parsed = {}
    for line in data.decode(errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        parsed[key.strip()] = value
    return parsed


class CredentialEnsureHandler(TaskHandler):
    """Ensure a credentials file holds ``fields`` and publish them as facts.

    Parameters:
        path: Credentials file on the host
        fields: Mapping of field name to value; written upper-cased
        owner, group: File ownership (default root)
        mode: File mode (default 0600)
        prefix: Prefix for the published fact names
    """

    name = "credential-ensure"
    required = ("path", "fields")
    optional = ("owner", "group", "mode", "prefix")

    def validate(self, parameters: Mapping[str, Any]) -> None:
        super().validate(parameters)
        fields = parameters["fields"]
        if not isinstance(fields, Mapping):
            raise ParameterError(f"{self.name}: fields must be a mapping")
        for key, value in fields.items():
            if not NAME_RE.match(str(key)):
                raise ParameterError(f"{self.name}: invalid field name {key!r}")
            if "\n" in str(value):
                raise ParameterError(f"{self.name}: field {key} contains a newline")

    def declared_facts(self, parameters: Mapping[str, Any]) -> set[str]:
        fields = parameters.get("fields")
        if not isinstance(fields, Mapping):
            return set()
        prefix = parameters.get("prefix") or ""
        return {f"{prefix}{key}" for key in fields}

    def _attributes(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "owner": parameters.get("owner", "root"),
            "group": parameters.get("group", "root"),
            "mode": parameters.get("mode", "0600"),
        }

    def _facts(self, parameters: Mapping[str, Any]) -> dict[str, str]:
        prefix = parameters.get("prefix") or ""
        return {f"{prefix}{key}": str(value) for key, value in parameters["fields"].items()}

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        path = parameters["path"]
        published = self._facts(parameters)
        try:
            current = parse_credentials(await connection.fetch_file(path))
        except FileNotFoundError:
            return DesiredStateDelta.of(f"{path} missing", **published)

        wanted = {str(k).upper(): str(v) for k, v in parameters["fields"].items()}
        reasons = [f"{key} differs" for key in wanted if current.get(key) != wanted[key]]
        if set(current) != set(wanted):
            reasons.append("field set differs")
        current_stat = await stat_path(connection, path)
        if current_stat is not None:
            reasons += attribute_drift(current_stat, self._attributes(parameters))
        if reasons:
            return DesiredStateDelta.of(*reasons, **published)
        return DesiredStateDelta.none(**published)

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        path = parameters["path"]
        attributes = self._attributes(parameters)
        data = format_credentials(parameters["fields"])
        published = self._facts(parameters)
        try:
            current = await connection.fetch_file(path)
        except FileNotFoundError:
            current = None

        if current != data:
            await connection.put_file(data, path, **attributes)
            return ApplyOutcome(changed=True, detail=f"wrote {len(published)} field(s) to {path}", facts=published)

        current_stat = await stat_path(connection, path)
        if current_stat is None or not attribute_drift(current_stat, attributes):
            return ApplyOutcome(changed=False, facts=published)
        await fix_attributes(connection, path, attributes)
        return ApplyOutcome(changed=True, detail=f"updated attributes of {path}", facts=published)
