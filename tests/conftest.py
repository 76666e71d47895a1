"""Shared fixtures: an in-memory host and a scriptable task handler."""

import base64
import re
import shlex
from collections.abc import Mapping
from typing import Any

import pytest

from provisor.bindings import Bindings
from provisor.connection import Connection
from provisor.exceptions import ParameterError
from provisor.facts import FactCache
from provisor.registry import TaskHandler, default_registry
from provisor.types import ApplyOutcome, DesiredStateDelta

LOCK_ERROR = "E: Could not get lock /var/lib/dpkg/lock-frontend. It is held by process 4242 (apt-get)"

MUTATING = re.compile(
    r"^(apt-get (?!-s)|DEBIAN_FRONTEND=noninteractive apt-get (?!-s)|systemctl (start|stop|restart|reload|enable|disable|reset-failed)"
    r"|systemd-run|useradd|usermod|userdel|mkdir|rm |chown|chmod|touch|install |git .*(clone|checkout|reset|fetch))"
)


class FakeConnection(Connection):
    """A simulated Debian host.

    Understands the commands the built-in handlers issue for packages,
    services, users and files; anything else succeeds with empty output
    unless ``responses`` says otherwise. Every command is recorded.
    """

    def __init__(self, name: str = "fake") -> None:
        super().__init__(name)
        self.packages: set[str] = set()
        self.upgradable: set[str] = set()
        self.services: dict[str, dict[str, str]] = {}
        self.users: dict[str, dict[str, Any]] = {}
        self.files: dict[str, dict[str, Any]] = {}
        self.now = 100_000
        self.cache_mtime = 100_000
        self.lock_failures = 0
        self.responses: list[tuple[str, Any]] = []
        self.commands: list[str] = []
        self.staged: dict[str, bytes] = {}
        self.closed = False

    # -- helpers used by tests -------------------------------------------------

    def add_service(self, name: str, active: str = "inactive", enabled: str = "disabled") -> None:
        self.services[name] = {"active": active, "enabled": enabled}

    def add_file(self, path: str, content: bytes = b"", owner: str = "root", group: str = "root", mode: str = "0644") -> None:
        self.files[path] = {"kind": "regular file", "content": content, "owner": owner, "group": group, "mode": mode}

    def add_dir(self, path: str, owner: str = "root", group: str = "root", mode: str = "0755") -> None:
        self.files[path] = {"kind": "directory", "content": b"", "owner": owner, "group": group, "mode": mode}

    def respond(self, pattern: str, stdout: str = "", stderr: str = "", exit_code: int = 0) -> None:
        """Answer commands matching ``pattern`` with a fixed result."""
        self.responses.append((pattern, (stdout, stderr, exit_code)))

    @property
    def mutations(self) -> list[str]:
        return [c for c in self.commands if MUTATING.search(c)]

    # -- transport -------------------------------------------------------------

    async def close(self) -> None:
        self.closed = True

    async def _upload(self, data: bytes) -> str:
        staging = f"/tmp/.provisor-{len(self.staged)}"
        self.staged[staging] = data
        return staging

    async def _download(self, remote_path: str) -> bytes:
        entry = self.files.get(remote_path)
        if entry is None or entry["kind"] == "directory":
            raise FileNotFoundError(remote_path)
        return entry["content"]

    async def _run(self, command: str, stdin: str) -> tuple[str, str, int]:
        if command.startswith("sudo -n "):
            command = shlex.split(command)[-1]
        self.commands.append(command)
        for pattern, response in self.responses:
            if re.search(pattern, command):
                return response(command) if callable(response) else response
        return self._dispatch(command)

    def _dispatch(self, command: str) -> tuple[str, str, int]:
        if command.startswith("test -e ") and "|| exit 44" in command:
            words = shlex.split(command)
            entry = self.files.get(words[2])
            if entry is None:
                return "", "", 44
            if "base64" in command:
                return base64.b64encode(entry["content"]).decode(), "", 0
            mode = f"{int(entry['mode'], 8):o}"
            return f"{entry['kind']}|{entry['owner']}|{entry['group']}|{mode}\n", "", 0
        if command.startswith("test -e "):
            return "", "", 0 if shlex.split(command)[2] in self.files else 1
        if "apt-get" in command or command.startswith("dpkg-query") or "pkgcache.bin" in command:
            return self._apt(command)
        if command.startswith("systemctl "):
            return self._systemctl(shlex.split(command))
        if command.startswith(("getent ", "id -nG", "useradd", "usermod", "userdel")):
            return self._user(shlex.split(command))
        if command.startswith("install "):
            return self._install(command)
        return self._fs(command)

    def _apt(self, command: str) -> tuple[str, str, int]:
        if command.startswith("dpkg-query"):
            lines = [f"{p}\tinstall ok installed" for p in sorted(self.packages)]
            return "\n".join(lines) + "\n", "", 0
        if "pkgcache.bin" in command:
            return f"{self.now} {self.cache_mtime}\n", "", 0
        words = shlex.split(command)
        action = next(w for w in words if w in ("install", "remove", "update", "upgrade", "dist-upgrade"))
        targets = words[words.index(action) + 1:]
        if "-s" in words:
            pending = self.upgradable if action != "install" else self.upgradable & set(targets)
            return "".join(f"Inst {p} [1.0] (1.1 Debian)\n" for p in sorted(pending)), "", 0
        if self.lock_failures and action in ("install", "remove"):
            self.lock_failures -= 1
            return "", LOCK_ERROR, 100
        if action == "update":
            self.cache_mtime = self.now
        elif action in ("upgrade", "dist-upgrade"):
            self.upgradable.clear()
        elif action == "install":
            self.packages.update(targets)
            self.upgradable.difference_update(targets)
        elif action == "remove":
            self.packages.difference_update(targets)
        return "", "", 0

    def _systemctl(self, words: list[str]) -> tuple[str, str, int]:
        action, name = words[1], words[-1]
        if action == "show":
            service = self.services.get(name.removesuffix(".service")) or self.services.get(name)
            if service is None:
                return "LoadState=not-found\nActiveState=inactive\nUnitFileState=\nMainPID=0\n", "", 0
            pid = 4321 if service["active"] == "active" else 0
            return (
                f"LoadState=loaded\nActiveState={service['active']}\n"
                f"UnitFileState={service['enabled']}\nMainPID={pid}\n"
            ), "", 0
        service = self.services.get(name)
        if service is None:
            return "", f"Failed to {action} {name}: Unit {name} not found.", 5
        if action in ("start", "restart", "reload"):
            service["active"] = "active"
        elif action == "stop":
            service["active"] = "inactive"
        elif action == "enable":
            service["enabled"] = "enabled"
        elif action == "disable":
            service["enabled"] = "disabled"
        return "", "", 0

    def _user(self, words: list[str]) -> tuple[str, str, int]:
        name = words[-1]
        user = self.users.get(name)
        if words[0] == "getent":
            if user is None:
                return "", "", 2
            return f"{name}:x:{user['uid']}:{user['uid']}:{user['comment']}:{user['home']}:{user['shell']}\n", "", 0
        if words[0] == "id":
            if user is None:
                return "", f"id: '{name}': no such user", 1
            return " ".join([name, *sorted(user["groups"])]) + "\n", "", 0
        if words[0] == "userdel":
            self.users.pop(name, None)
            return "", "", 0

        options = _options(words[1:-1], flags=("-m", "-r", "-a"))
        if words[0] == "useradd":
            user = {
                "uid": 1000 + len(self.users),
                "comment": "",
                "home": f"/home/{name}",
                "shell": "/bin/sh",
                "groups": set(),
            }
            self.users[name] = user
        elif user is None:
            return "", f"usermod: user '{name}' does not exist", 6
        if "-G" in options:
            groups = set(options["-G"].split(","))
            user["groups"] = user["groups"] | groups if "-a" in options else groups
        for flag, field in (("-s", "shell"), ("-d", "home"), ("-c", "comment")):
            if flag in options:
                user[field] = options[flag]
        return "", "", 0

    def _install(self, command: str) -> tuple[str, str, int]:
        words = shlex.split(command.split(" && ")[0])
        options = _options(words[1:-2])
        staging, dest = words[-2], words[-1]
        previous = self.files.get(dest, {})
        self.files[dest] = {
            "kind": "regular file",
            "content": self.staged.pop(staging),
            "owner": options.get("-o", previous.get("owner", "root")),
            "group": options.get("-g", previous.get("group", "root")),
            "mode": options.get("-m", previous.get("mode", "0644")),
        }
        return "", "", 0

    def _fs(self, command: str) -> tuple[str, str, int]:
        words = shlex.split(command)
        if not words:
            return "", "", 0
        verb, path = words[0], words[-1]
        if verb == "mkdir":
            if path not in self.files:
                self.add_dir(path)
        elif verb == "rm":
            for existing in [p for p in self.files if p == path or p.startswith(path.rstrip("/") + "/")]:
                del self.files[existing]
        elif verb == "touch":
            if path not in self.files:
                self.add_file(path)
        elif verb in ("chown", "chmod"):
            targets = [p for p in self.files if p == path or ("-R" in words and p.startswith(path + "/"))]
            if not targets:
                return "", f"{verb}: cannot access '{path}': No such file or directory", 1
            for target in targets:
                entry = self.files[target]
                if verb == "chmod":
                    entry["mode"] = words[-2]
                else:
                    owner, _, group = words[-2].partition(":")
                    if owner:
                        entry["owner"] = owner
                    if group:
                        entry["group"] = group
        return "", "", 0


def _options(words: list[str], flags: tuple[str, ...] = ()) -> dict[str, str]:
    """Parse ``-x value`` pairs; names in ``flags`` take no value."""
    options: dict[str, str] = {}
    i = 0
    while i < len(words):
        if words[i] in flags:
            options[words[i]] = ""
            i += 1
        else:
            options[words[i]] = words[i + 1] if i + 1 < len(words) else ""
            i += 2
    return options


class ScriptedHandler(TaskHandler):
    """Task handler whose behaviour tests control.

    Resource state lives in ``state``; a step with ``key``/``value`` has a
    delta while ``state[key] != value``. Exceptions queued in
    ``errors[key]`` are raised, one per attempt, from probe (or from apply
    when queued in ``apply_errors``).
    """

    name = "scripted"

    def __init__(self, idempotent: bool = True) -> None:
        self.idempotent = idempotent
        self.state: dict[str, Any] = {}
        self.errors: dict[str, list[BaseException]] = {}
        self.apply_errors: dict[str, list[BaseException]] = {}
        self.calls: list[tuple[str, str]] = []

    def validate(self, parameters: Mapping[str, Any]) -> None:
        if "key" not in parameters:
            raise ParameterError("scripted: key is required")

    def declared_facts(self, parameters: Mapping[str, Any]) -> set[str]:
        return set(parameters.get("publish") or {})

    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        key = parameters["key"]
        self.calls.append(("probe", key))
        await connection.execute(f"probe {key}")
        queued = self.errors.get(key)
        if queued:
            raise queued.pop(0)
        published = dict(parameters.get("publish") or {})
        if self.state.get(key) == parameters.get("value"):
            return DesiredStateDelta.none(**published)
        return DesiredStateDelta.of(f"{key} differs", **published)

    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        key = parameters["key"]
        self.calls.append(("apply", key))
        await connection.execute(f"apply {key}")
        queued = self.apply_errors.get(key)
        if queued:
            raise queued.pop(0)
        self.state[key] = parameters.get("value")
        return ApplyOutcome(changed=True, detail=f"set {key}")


@pytest.fixture
def fake_host():
    return FakeConnection()


@pytest.fixture
def scripted():
    return ScriptedHandler()


@pytest.fixture
def registry(scripted):
    registry = default_registry()
    registry.register("scripted", scripted)
    return registry


@pytest.fixture
def bindings():
    return Bindings(play={"app_user": "hng", "log_dir": "/var/log/app"})
