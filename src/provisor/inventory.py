"""Inventory loading for provisor.

Inventories use the Ansible YAML or JSON (``ansible-inventory --list``)
layouts, so existing inventories load unchanged. Variables for a host are
resolved in increasing precedence:

    group "all" vars < parent group vars < group vars < host vars

The resolved variables become the ``inventory`` layer of the host's
bindings.
"""

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .types import HostConfig

CONNECTION_FIELDS = {"ansible_host", "ansible_port", "ansible_user", "ansible_connection"}


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables.

    Attributes:
        name: Group name (e.g., "webservers", "databases")
        hosts: Dictionary mapping host names to HostConfig objects
        vars: Group-level variables inherited by all hosts
        children: Child group names for hierarchical structures
    """

    name: str
    hosts: dict[str, HostConfig] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    children: list[str] = field(default_factory=list)

    def add_host(self, host: HostConfig) -> None:
        self.hosts[host.name] = host

    def list_hosts(self) -> list[HostConfig]:
        return list(self.hosts.values())


@dataclass
class Inventory:
    """Typed inventory: groups of hosts plus their variables.

    Example:
        >>> inventory = Inventory()
        >>> web = HostGroup(name="webservers")
        >>> web.add_host(HostConfig(name="web01", ansible_host="192.168.1.10"))
        >>> inventory.add_group(web)
        >>> list(inventory.select("webservers"))
        ['web01']
    """

    groups: dict[str, HostGroup] = field(default_factory=dict)

    def add_group(self, group: HostGroup) -> None:
        existing = self.groups.get(group.name)
        if existing is None:
            self.groups[group.name] = group
            return
        existing.hosts.update(group.hosts)
        existing.vars.update(group.vars)
        existing.children.extend(c for c in group.children if c not in existing.children)

    def get_group(self, name: str) -> HostGroup | None:
        return self.groups.get(name)

    def list_groups(self) -> list[HostGroup]:
        return list(self.groups.values())

    def get_all_hosts(self) -> dict[str, HostConfig]:
        """All unique hosts, in first-seen order."""
        hosts: dict[str, HostConfig] = {}
        for group in self.groups.values():
            for name, host in group.hosts.items():
                hosts.setdefault(name, host)
        return hosts

    def group_hosts(self, name: str, _seen: set[str] | None = None) -> dict[str, HostConfig]:
        """Hosts in a group, including those of its child groups."""
        seen = _seen if _seen is not None else set()
        group = self.groups.get(name)
        if group is None or name in seen:
            return {}
        seen.add(name)
        hosts = dict(group.hosts)
        for child in group.children:
            for host_name, host in self.group_hosts(child, seen).items():
                hosts.setdefault(host_name, host)
        return hosts

    def groups_for(self, host_name: str) -> list[str]:
        """Groups containing ``host_name``, ancestors before descendants."""
        ordered: list[str] = []

        def visit(name: str, trail: tuple[str, ...]) -> None:
            group = self.groups.get(name)
            if group is None or name in trail:
                return
            if host_name in self.group_hosts(name) and name not in ordered:
                ordered.append(name)
            for child in group.children:
                visit(child, trail + (name,))

        parents = {child for g in self.groups.values() for child in g.children}
        for name in self.groups:
            if name not in parents:
                visit(name, ())
        return ordered

    def host_variables(self, host_name: str) -> dict[str, Any]:
        """Resolve the variables visible to a host, later layers winning."""
        variables: dict[str, Any] = {}
        names = self.groups_for(host_name)
        if "all" in names:
            names.remove("all")
            names.insert(0, "all")
        elif "all" in self.groups:
            names.insert(0, "all")
        for name in names:
            variables.update(self.groups[name].vars)
        host = self.get_all_hosts().get(host_name)
        if host is not None:
            variables.update(host.vars)
        return variables

    def resolve_host(self, host_name: str) -> HostConfig:
        """HostConfig with connection fields inherited from group vars.

        A host that does not set ``ansible_user`` (or port, address,
        connection type) itself takes it from its groups.
        """
        host = self.get_all_hosts()[host_name]
        group_vars: dict[str, Any] = {}
        for name in ["all", *self.groups_for(host_name)]:
            if name in self.groups:
                group_vars.update(self.groups[name].vars)
        return HostConfig(
            name=host.name,
            ansible_host=host.ansible_host if host.ansible_host != host.name else group_vars.get("ansible_host", host.name),
            ansible_port=host.ansible_port if host.ansible_port != 22 else int(group_vars.get("ansible_port", 22)),
            ansible_user=host.ansible_user or group_vars.get("ansible_user", ""),
            ansible_connection=(
                host.ansible_connection
                if host.ansible_connection != "ssh"
                else group_vars.get("ansible_connection", "ssh")
            ),
            vars=self.host_variables(host_name),
        )

    def select(self, pattern: str | Iterable[str] = "all") -> dict[str, HostConfig]:
        """Hosts matching a play's ``hosts:`` value.

        ``all`` (or ``*``) selects every host; otherwise each comma or colon
        separated name is a group or a host name.
        """
        names = pattern.replace(":", ",").split(",") if isinstance(pattern, str) else list(pattern)
        all_hosts = self.get_all_hosts()
        selected: dict[str, HostConfig] = {}
        for name in (n.strip() for n in names):
            if not name:
                continue
            if name in ("all", "*"):
                selected.update(all_hosts)
            elif name in self.groups:
                selected.update(self.group_hosts(name))
            elif name in all_hosts:
                selected[name] = all_hosts[name]
        return selected


def load_inventory(inventory_file: str | Path, require_hosts: bool = True) -> Inventory:
    """Load inventory from a YAML or JSON file, auto-detecting the format.

    Raises:
        ValueError: If require_hosts is True and no hosts are loaded

    Example:
        >>> inventory = load_inventory("hosts.yml")
    """
    content = Path(inventory_file).read_text()
    if content.lstrip().startswith("{"):
        return load_inventory_json(json.loads(content), require_hosts=require_hosts)
    return load_inventory_yaml(yaml.safe_load(content), require_hosts=require_hosts)


def load_inventory_yaml(data: dict[str, Any] | None, require_hosts: bool = True) -> Inventory:
    """Load inventory from parsed YAML data.

    Expected structure::

        all:
          vars:
            ansible_user: deploy
          children:
            webservers:
              hosts:
                web01:
                  ansible_host: 10.0.0.1
              vars:
                http_port: 80

    Top-level groups need not be nested under ``all``.
    """
    inventory = Inventory()
    for group_name, group_data in (data or {}).items():
        _load_yaml_group(inventory, group_name, group_data)

    if require_hosts and not inventory.get_all_hosts():
        raise ValueError("No hosts loaded from inventory")
    return inventory


def _load_yaml_group(inventory: Inventory, group_name: str, group_data: Any) -> None:
    group = HostGroup(name=group_name)
    if isinstance(group_data, dict):
        hosts = group_data.get("hosts")
        if isinstance(hosts, dict):
            for host_name, host_data in hosts.items():
                group.add_host(_host_from_vars(host_name, host_data if isinstance(host_data, dict) else {}))
        elif isinstance(hosts, list):
            for host_name in hosts:
                group.add_host(_host_from_vars(str(host_name), {}))

        if isinstance(group_data.get("vars"), dict):
            group.vars = dict(group_data["vars"])

        children = group_data.get("children")
        if isinstance(children, list):
            group.children = [str(c) for c in children]
        elif isinstance(children, dict):
            group.children = list(children)
            for child_name, child_data in children.items():
                _load_yaml_group(inventory, child_name, child_data)

    inventory.add_group(group)


def _host_from_vars(host_name: str, host_data: dict[str, Any]) -> HostConfig:
    """Create a HostConfig, keeping non-connection keys as host vars."""
    return HostConfig(
        name=host_name,
        ansible_host=host_data.get("ansible_host", host_name),
        ansible_port=int(host_data.get("ansible_port", 22)),
        ansible_user=host_data.get("ansible_user", ""),
        ansible_connection=host_data.get("ansible_connection", "ssh"),
        vars={k: v for k, v in host_data.items() if k not in CONNECTION_FIELDS},
    )


def load_inventory_json(data: dict[str, Any], require_hosts: bool = True) -> Inventory:
    """Load inventory from the ``ansible-inventory --list`` JSON format.

    Example:
        >>> data = {
        ...     "webservers": {"hosts": ["web01"]},
        ...     "_meta": {"hostvars": {"web01": {"ansible_host": "10.0.0.1"}}}
        ... }
        >>> inventory = load_inventory_json(data)
    """
    hostvars = data.get("_meta", {}).get("hostvars", {})
    inventory = Inventory()

    for group_name, group_data in data.items():
        if group_name == "_meta" or not isinstance(group_data, dict):
            continue

        group = HostGroup(name=group_name)
        for host_name in group_data.get("hosts") or []:
            host_data = hostvars.get(host_name, {})
            group.add_host(_host_from_vars(host_name, host_data if isinstance(host_data, dict) else {}))
        if isinstance(group_data.get("vars"), dict):
            group.vars = dict(group_data["vars"])
        children = group_data.get("children")
        if isinstance(children, (list, dict)):
            group.children = list(children)
        inventory.add_group(group)

    if require_hosts and not inventory.get_all_hosts():
        raise ValueError("No hosts loaded from inventory")
    return inventory


def load_localhost() -> Inventory:
    """A localhost-only inventory for local (non-SSH) execution."""
    group = HostGroup(name="all")
    group.add_host(HostConfig(name="localhost", ansible_host="127.0.0.1", ansible_connection="local"))
    inventory = Inventory()
    inventory.add_group(group)
    return inventory
