"""Tests for inventory loading and variable resolution."""

import json
import textwrap

import pytest
import yaml

from provisor.inventory import (
    HostGroup,
    Inventory,
    load_inventory,
    load_inventory_json,
    load_inventory_yaml,
    load_localhost,
)
from provisor.types import HostConfig

INVENTORY = textwrap.dedent(
    """
    all:
      vars:
        ansible_user: deploy
        app_env: prod
      children:
        webservers:
          hosts:
            web01:
              ansible_host: 10.0.0.1
              http_port: 8080
            web02:
          vars:
            http_port: 80
        databases:
          hosts:
            db01:
              ansible_host: 10.0.0.3
              ansible_port: 2222
    """
)


@pytest.fixture
def inventory():
    return load_inventory_yaml(yaml.safe_load(INVENTORY))


class TestYamlInventory:
    """Tests for the YAML layout."""

    def test_hosts_and_groups(self, inventory):
        assert list(inventory.get_all_hosts()) == ["web01", "web02", "db01"]
        assert sorted(inventory.groups) == ["all", "databases", "webservers"]
        assert inventory.get_group("all").children == ["webservers", "databases"]

    def test_connection_fields_are_not_vars(self, inventory):
        web01 = inventory.get_all_hosts()["web01"]
        assert web01.ansible_host == "10.0.0.1"
        assert web01.vars == {"http_port": 8080}

    def test_host_without_data(self, inventory):
        web02 = inventory.get_all_hosts()["web02"]
        assert web02.ansible_host == "web02"
        assert web02.vars == {}

    def test_variable_precedence(self, inventory):
        assert inventory.host_variables("web01") == {"ansible_user": "deploy", "app_env": "prod", "http_port": 8080}
        assert inventory.host_variables("web02")["http_port"] == 80
        assert "http_port" not in inventory.host_variables("db01")

    def test_groups_for(self, inventory):
        assert inventory.groups_for("db01") == ["all", "databases"]

    def test_resolve_host_inherits_connection_fields(self, inventory):
        db01 = inventory.resolve_host("db01")
        assert (db01.ansible_host, db01.ansible_port, db01.ansible_user) == ("10.0.0.3", 2222, "deploy")
        assert db01.vars["app_env"] == "prod"

    def test_require_hosts(self):
        with pytest.raises(ValueError, match="No hosts loaded"):
            load_inventory_yaml({"all": {"vars": {"x": 1}}})
        assert load_inventory_yaml(None, require_hosts=False).get_all_hosts() == {}

    def test_host_list_form(self):
        inventory = load_inventory_yaml({"web": {"hosts": ["a", "b"]}})
        assert list(inventory.select("web")) == ["a", "b"]


class TestSelect:
    """Tests for matching a play's hosts value."""

    @pytest.mark.parametrize(
        "pattern,expected",
        [
            ("all", ["web01", "web02", "db01"]),
            ("*", ["web01", "web02", "db01"]),
            ("webservers", ["web01", "web02"]),
            ("web01,databases", ["web01", "db01"]),
            ("webservers:databases", ["web01", "web02", "db01"]),
            ("nothing", []),
        ],
    )
    def test_select(self, inventory, pattern, expected):
        assert list(inventory.select(pattern)) == expected

    def test_select_list(self, inventory):
        assert list(inventory.select(["db01"])) == ["db01"]

    def test_cyclic_children_terminate(self):
        inventory = Inventory()
        a = HostGroup(name="a", children=["b"])
        a.add_host(HostConfig(name="h1", ansible_host="h1"))
        inventory.add_group(a)
        inventory.add_group(HostGroup(name="b", children=["a"]))
        assert list(inventory.group_hosts("b")) == ["h1"]


class TestJsonInventory:
    """Tests for the ansible-inventory --list layout."""

    def test_load(self):
        data = {
            "_meta": {"hostvars": {"web01": {"ansible_host": "10.0.0.1", "role": "edge"}}},
            "all": {"children": ["webservers"], "vars": {"ansible_user": "deploy"}},
            "webservers": {"hosts": ["web01"]},
        }
        inventory = load_inventory_json(data)

        assert inventory.get_all_hosts()["web01"].ansible_host == "10.0.0.1"
        assert inventory.host_variables("web01") == {"ansible_user": "deploy", "role": "edge"}

    def test_empty(self):
        with pytest.raises(ValueError):
            load_inventory_json({"_meta": {"hostvars": {}}})


class TestLoadInventory:
    """Tests for format detection when loading from disk."""

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "hosts.yml"
        path.write_text(INVENTORY)
        assert len(load_inventory(path).get_all_hosts()) == 3

    def test_json_file(self, tmp_path):
        path = tmp_path / "hosts.json"
        path.write_text(json.dumps({"web": {"hosts": ["web01"]}}))
        assert list(load_inventory(path).get_all_hosts()) == ["web01"]

    def test_localhost(self):
        host = load_localhost().get_all_hosts()["localhost"]
        assert host.is_local
        assert host.ansible_host == "127.0.0.1"
