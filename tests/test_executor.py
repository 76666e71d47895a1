"""Tests for running plays across many hosts."""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import FakeConnection
from provisor.config import RunConfig
from provisor.exceptions import BuildError, ErrorTypes, UnresolvedVariableError
from provisor.executor import ExecutionResults, PlaybookExecutor, host_bindings
from provisor.inventory import load_inventory_yaml
from provisor.loader import parse_playbook
from provisor.report import RunReport
from provisor.types import Outcome

INVENTORY = {
    "all": {"vars": {"app_user": "deploy"}},
    "web": {"hosts": {"web01": {"ansible_host": "10.0.0.1"}, "web02": {"ansible_host": "10.0.0.2"}}},
    "db": {"hosts": {"db01": {"ansible_host": "10.0.0.3", "app_user": "postgres"}}},
}

SITE = [
    {
        "name": "users",
        "hosts": "all",
        "tasks": [{"name": "app user", "user": {"name": "{{ app_user }}", "shell": "/bin/bash"}}],
    }
]


class Hosts:
    """Connection factory handing out one FakeConnection per host."""

    def __init__(self, cls=FakeConnection):
        self.cls = cls
        self.connections = {}

    def __call__(self, host):
        connection = self.connections.setdefault(host.name, self.cls(host.name))
        return connection


@pytest.fixture
def inventory():
    return load_inventory_yaml(INVENTORY)


@pytest.fixture
def hosts():
    return Hosts()


def make_executor(hosts, **config):
    config.setdefault("max_retries", 0)
    return PlaybookExecutor(RunConfig(**config), connection_factory=hosts)


class TestRun:
    """Tests for PlaybookExecutor.run."""

    @pytest.mark.asyncio
    async def test_every_host_gets_its_own_engine(self, inventory, hosts):
        results = await make_executor(hosts).run(parse_playbook(SITE), inventory)

        assert results.success
        assert results.hosts == ["db01", "web01", "web02"]
        assert set(hosts.connections) == {"web01", "web02", "db01"}
        assert "deploy" in hosts.connections["web01"].users
        assert "postgres" in hosts.connections["db01"].users
        assert all(c.closed for c in hosts.connections.values())
        assert results.reports[("users", "web01")].results[0].outcome is Outcome.CHANGED

    @pytest.mark.asyncio
    async def test_build_error_touches_no_host(self, inventory, hosts):
        plays = parse_playbook([{"hosts": "all", "tasks": [{"command": "echo {{ undefined_name }}"}]}])

        with pytest.raises(UnresolvedVariableError):
            await make_executor(hosts).run(plays, inventory)

        assert hosts.connections == {}

    @pytest.mark.asyncio
    async def test_build_error_in_a_later_play_touches_no_host(self, inventory, hosts):
        plays = parse_playbook(SITE + [{"hosts": "db", "tasks": [{"command": "{{ nope }}"}]}])
        with pytest.raises(UnresolvedVariableError):
            await make_executor(hosts).run(plays, inventory)
        assert hosts.connections == {}

    @pytest.mark.asyncio
    async def test_unsupported_connection_is_a_build_error(self, hosts):
        inventory = load_inventory_yaml({"all": {"hosts": {"box": {"ansible_connection": "winrm"}}}})

        with pytest.raises(BuildError, match="unsupported connection type 'winrm'"):
            await make_executor(hosts).run(parse_playbook(SITE), inventory)

        assert hosts.connections == {}

    @pytest.mark.asyncio
    async def test_failed_host_skips_later_plays(self, inventory, hosts):
        hosts.connections["web02"] = FakeConnection("web02")
        hosts.connections["web02"].respond(r"^getent", stderr="getent: broken", exit_code=1)
        plays = parse_playbook(SITE + [{"name": "after", "hosts": "all", "tasks": [{"command": "uptime"}]}])

        results = await make_executor(hosts).run(plays, inventory)

        assert not results.success
        assert results.failed_hosts == ["web02"]
        assert ("after", "web01") in results.reports
        assert ("after", "web02") not in results.reports

    @pytest.mark.asyncio
    async def test_limit(self, inventory, hosts):
        results = await make_executor(hosts).run(
            parse_playbook(SITE), inventory, limit=lambda selected: {k: v for k, v in selected.items() if k == "db01"}
        )
        assert results.hosts == ["db01"]
        assert list(hosts.connections) == ["db01"]

    @pytest.mark.asyncio
    async def test_extra_vars_win(self, inventory, hosts):
        await make_executor(hosts).run(parse_playbook(SITE), inventory, extra_vars={"app_user": "ops"})
        assert all(list(c.users) == ["ops"] for c in hosts.connections.values())

    @pytest.mark.asyncio
    async def test_check_mode_changes_nothing(self, inventory, hosts):
        results = await make_executor(hosts, check_mode=True).run(parse_playbook(SITE), inventory)

        assert results.success
        assert all(c.mutations == [] for c in hosts.connections.values())
        assert results.reports[("users", "web01")].results[0].detail.startswith("would change")

    @pytest.mark.asyncio
    async def test_parallel_limit(self, inventory):
        active = {"now": 0, "max": 0}

        class SlowHost(FakeConnection):
            async def _run(self, command, stdin):
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
                await asyncio.sleep(0.01)
                active["now"] -= 1
                return await super()._run(command, stdin)

        await make_executor(Hosts(SlowHost), parallel=2).run(parse_playbook(SITE), inventory)

        assert active["max"] == 2

    @pytest.mark.asyncio
    async def test_progress_callbacks(self, inventory, hosts):
        progress = MagicMock()
        executor = PlaybookExecutor(RunConfig(), progress=progress, connection_factory=hosts)

        await executor.run(parse_playbook(SITE), inventory)

        progress.on_execution_start.assert_called_once_with(3, "playbook")
        assert progress.on_host_start.call_count == 3
        assert progress.on_step_complete.call_count == 3
        progress.on_execution_complete.assert_called_once()
        total, successful, failed, _ = progress.on_execution_complete.call_args.args
        assert (total, successful, failed) == (3, 3, 0)

    @pytest.mark.asyncio
    async def test_cancel(self, inventory, hosts):
        executor = make_executor(hosts)
        plays = parse_playbook([{"hosts": "web01", "tasks": [{"command": "first"}, {"command": "second"}]}])

        def cancel_during_first(command):
            executor.cancel()
            return "", "", 0

        hosts.connections["web01"] = FakeConnection("web01")
        hosts.connections["web01"].responses.append((r"^first$", cancel_during_first))

        results = await executor.run(plays, inventory)

        report = results.reports[("play 1", "web01")]
        assert report.cancelled
        assert [r.outcome for r in report.results] == [Outcome.CHANGED, Outcome.FAILED]
        assert "second" not in hosts.connections["web01"].commands

    @pytest.mark.asyncio
    async def test_cancel_reaches_waiting_hosts_and_later_plays(self, inventory, hosts):
        executor = make_executor(hosts, parallel=1)
        plays = parse_playbook(
            [
                {"name": "deploy", "hosts": "web", "tasks": [{"command": "first"}]},
                {"name": "verify", "hosts": "web", "tasks": [{"command": "uptime"}]},
            ]
        )

        def cancel_during_first(command):
            executor.cancel()
            return "", "", 0

        for name in ("web01", "web02"):
            hosts.connections[name] = FakeConnection(name)
            hosts.connections[name].responses.append((r"^first$", cancel_during_first))

        results = await executor.run(plays, inventory)

        ran = [n for n in ("web01", "web02") if hosts.connections[n].commands]
        assert len(ran) == 1
        (waiting,) = {"web01", "web02"} - set(ran)
        assert hosts.connections[waiting].commands == []
        assert results.reports[("deploy", waiting)].results[0].error_type == ErrorTypes.CANCELLED
        assert not any(play == "verify" for play, _ in results.reports)
        assert results.cancelled
        assert not results.success
        assert results.to_dict()["cancelled"] is True

    def test_to_dict(self):
        results = ExecutionResults(reports={("p", "h"): RunReport(host="h")}, duration=1.23456)
        data = results.to_dict()
        assert data["success"] is True
        assert data["duration"] == 1.235
        assert data["plays"][0]["play"] == "p"
        assert data["plays"][0]["host"] == "h"


def test_host_bindings_layers(inventory):
    (play,) = parse_playbook(
        [{"hosts": "all", "defaults": {"port": 80, "app_user": "nobody"}, "vars": {"port": 8080}, "tasks": []}]
    )
    host = inventory.resolve_host("db01")

    bindings = host_bindings(play, host, inventory, {"release": "1.4"})

    assert bindings["port"] == 8080
    assert bindings["app_user"] == "postgres"
    assert bindings["inventory_hostname"] == "db01"
    assert bindings["release"] == "1.4"
