"""Host limiting for ``provisor run --limit``.

A limit is a comma separated list of:

- exact host names: ``web01,web02``
- glob patterns: ``web*``
- exclusions: ``!db*``
- group names: ``@webservers``
"""

import fnmatch
from dataclasses import dataclass, field
from typing import TypeVar

from .inventory import Inventory

T = TypeVar("T")


@dataclass
class LimitPattern:
    """A parsed ``--limit`` value."""

    exact: set[str] = field(default_factory=set)
    globs: set[str] = field(default_factory=set)
    excludes: set[str] = field(default_factory=set)
    groups: set[str] = field(default_factory=set)

    @property
    def has_includes(self) -> bool:
        return bool(self.exact or self.globs or self.groups)


def parse_limit_pattern(pattern: str) -> LimitPattern:
    """Parse a limit pattern into include and exclude sets."""
    limit = LimitPattern()
    for part in (pattern or "").split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("!"):
            limit.excludes.add(part[1:])
        elif part.startswith("@"):
            limit.groups.add(part[1:])
        elif any(c in part for c in "*?["):
            limit.globs.add(part)
        else:
            limit.exact.add(part)
    return limit


def match_host(hostname: str, limit: LimitPattern, group_members: set[str] | None = None) -> bool:
    """True when ``hostname`` passes the limit. Exclusions always win."""
    if any(fnmatch.fnmatch(hostname, p) for p in limit.excludes):
        return False
    if not limit.has_includes:
        return True
    if hostname in limit.exact or hostname in (group_members or set()):
        return True
    return any(fnmatch.fnmatch(hostname, p) for p in limit.globs)


def filter_hosts(
    hosts: dict[str, T],
    limit_pattern: str,
    inventory: Inventory | None = None,
) -> dict[str, T]:
    """Filter ``hosts`` by a limit pattern, keeping their order.

    Examples:
        filter_hosts(hosts, "web*,!web03")
        filter_hosts(hosts, "@webservers", inventory)
    """
    if not limit_pattern:
        return hosts
    limit = parse_limit_pattern(limit_pattern)
    members: set[str] = set()
    if inventory is not None:
        for group in limit.groups:
            members.update(inventory.group_hosts(group))
    return {name: host for name, host in hosts.items() if match_host(name, limit, members)}


def format_filter_summary(original_count: int, filtered_count: int, limit_pattern: str) -> str:
    """Human-readable summary of what a limit removed."""
    if filtered_count == original_count:
        return f"All {original_count} host(s) matched filter: {limit_pattern}"
    excluded = original_count - filtered_count
    return f"Filter '{limit_pattern}': {filtered_count}/{original_count} hosts ({excluded} excluded)"

