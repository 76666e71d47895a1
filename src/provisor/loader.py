"""Task document loader.

Reads a YAML playbook into plays of typed Tasks. Three task spellings are
accepted and may be mixed:

Explicit::

    - name: Install packages
      type: package-ensure
      parameters: {name: [git, nginx]}

Shorthand, keyed by a registered task type or alias::

    - name: Install packages
      package-ensure: {name: [git, nginx]}

Ansible modules, translated to the equivalent task type::

    - name: Create necessary directories
      file: {path: "{{ item }}", state: directory, owner: hng, mode: "0755"}
      loop: [/var/secrets, "{{ log_dir }}"]

A document is either a list of plays (each with ``tasks``), a single play
mapping, or a bare list of tasks.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .bindings import is_templated
from .exceptions import PlaybookError, UnknownTaskTypeError
from .registry import HandlerRegistry, default_registry
from .types import BecomeSpec, Task

logger = logging.getLogger(__name__)

TASK_KEYS = {
    "name",
    "type",
    "parameters",
    "args",
    "loop",
    "with_items",
    "when",
    "notify",
    "become",
    "become_user",
    "become_method",
    "ignore_errors",
    "register",
    "retries",
    "idempotent",
    "tags",
}

PLAY_KEYS = {
    "name",
    "hosts",
    "become",
    "become_user",
    "become_method",
    "vars",
    "vars_files",
    "defaults",
    "tasks",
    "handlers",
    "gather_facts",
}

FQCN_PREFIXES = ("ansible.builtin.", "ansible.posix.")


@dataclass
class Play:
    """One play: tasks and handlers applied to a set of hosts.

    Attributes:
        name: Display name
        hosts: Inventory pattern selecting the target hosts
        vars: Play variables (the ``play`` binding layer)
        defaults: Lowest precedence variables
        tasks: Tasks in order
        handlers: Deferred handlers in declaration order
        source: File the play was loaded from
    """

    name: str
    hosts: str = "all"
    vars: dict[str, Any] = field(default_factory=dict)
    defaults: dict[str, Any] = field(default_factory=dict)
    tasks: list[Task] = field(default_factory=list)
    handlers: list[Task] = field(default_factory=list)
    source: Path | None = None


@dataclass
class LoaderContext:
    """State shared while parsing one document."""

    base_dir: Path
    registry: HandlerRegistry
    become: BecomeSpec | None = None


def _is_true(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("yes", "true", "on", "1")
    return bool(value)


def _resolve_local(path: str, ctx: LoaderContext, subdir: str) -> str:
    """Resolve a controller-side file relative to the playbook."""
    if is_templated(path):
        return path
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return str(candidate)
    for option in (ctx.base_dir / subdir / candidate, ctx.base_dir / candidate):
        if option.exists():
            return str(option)
    raise PlaybookError(f"Local file not found: {path} (searched {ctx.base_dir / subdir} and {ctx.base_dir})")


# Ansible module translations -------------------------------------------------


def _translate_file(params: dict[str, Any], ctx: LoaderContext) -> tuple[str, dict[str, Any]]:
    params = dict(params)
    for alias in ("dest", "name"):
        if alias in params and "path" not in params:
            params["path"] = params.pop(alias)
    state = params.pop("state", None)
    attributes = {k: params[k] for k in ("path", "owner", "group", "mode") if k in params}
    if state == "directory":
        return "directory-ensure", attributes
    if state == "absent":
        return "directory-ensure", {"path": params.get("path"), "state": "absent"}
    if state in (None, "file", "touch"):
        result = dict(attributes)
        if state == "touch":
            result["state"] = "touch"
        if "recurse" in params:
            result["recurse"] = params["recurse"]
        return "file-attributes-ensure", result
    raise PlaybookError(f"file: unsupported state '{state}'")


def _translate_copy(params: dict[str, Any], ctx: LoaderContext) -> tuple[str, dict[str, Any]]:
    result = {k: params[k] for k in ("owner", "group", "mode") if k in params}
    result["path"] = params.get("dest") or params.get("path")
    if "content" in params:
        result["content"] = params["content"]
    elif "src" in params:
        src = _resolve_local(params["src"], ctx, "files")
        if is_templated(src):
            raise PlaybookError("copy: a templated src is not supported; use content")
        result["content"] = Path(src).read_text()
    else:
        raise PlaybookError("copy: one of content or src is required")
    return "file-content-ensure", result


def _translate_template(params: dict[str, Any], ctx: LoaderContext) -> tuple[str, dict[str, Any]]:
    result = dict(params)
    if "src" in result:
        result["src"] = _resolve_local(result["src"], ctx, "templates")
    return "templated-file-render", result


def _translate_shell(params: Any, ctx: LoaderContext) -> tuple[str, dict[str, Any]]:
    if isinstance(params, str):
        return "shell-command", {"cmd": params}
    result = dict(params)
    for alias in ("_raw_params", "free_form", "argv"):
        if alias in result and "cmd" not in result:
            value = result.pop(alias)
            result["cmd"] = " ".join(value) if isinstance(value, list) else value
    return "shell-command", result


def _translate_systemd(params: dict[str, Any], ctx: LoaderContext) -> tuple[str, dict[str, Any]]:
    return "service-ensure", {k: v for k, v in params.items() if k in ("name", "state", "enabled")}


ANSIBLE_MODULES: dict[str, Callable[[Any, LoaderContext], tuple[str, dict[str, Any]]]] = {
    "file": _translate_file,
    "copy": _translate_copy,
    "template": _translate_template,
    "shell": _translate_shell,
    "command": _translate_shell,
    "systemd": _translate_systemd,
}


# Tasks ----------------------------------------------------------------------


def _condition(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return " and ".join(f"({v})" for v in value) if value else None
    return str(value)


def _become(data: Mapping[str, Any], default: BecomeSpec | None) -> BecomeSpec | None:
    if "become" not in data:
        if "become_user" in data and default is not None:
            return BecomeSpec(user=data["become_user"], method=default.method)
        return default
    if not _is_true(data["become"]):
        return None
    return BecomeSpec(
        user=data.get("become_user", default.user if default else "root"),
        method=data.get("become_method", "sudo"),
    )


def _type_and_parameters(data: Mapping[str, Any], ctx: LoaderContext, label: str) -> tuple[str, dict[str, Any]]:
    if "type" in data:
        parameters = data.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            raise PlaybookError(f"{label}: parameters must be a mapping")
        task_type = str(data["type"])
        ctx.registry.resolve(task_type)
        return ctx.registry.canonical(task_type), dict(parameters)

    candidates = [k for k in data if k not in TASK_KEYS]
    if not candidates:
        raise PlaybookError(f"{label}: no task type given")
    if len(candidates) > 1:
        raise PlaybookError(f"{label}: conflicting task keys: {', '.join(candidates)}")

    key = candidates[0]
    value = data[key]
    args = data.get("args") or {}
    module = key
    for prefix in FQCN_PREFIXES:
        if module.startswith(prefix):
            module = module[len(prefix):]

    if module in ANSIBLE_MODULES:
        if isinstance(value, Mapping):
            value = {**value, **args}
        elif args:
            value = {"cmd": value, **args}
        task_type, parameters = ANSIBLE_MODULES[module](value, ctx)
        return task_type, parameters

    if module not in ctx.registry:
        raise UnknownTaskTypeError(key)
    if value is not None and not isinstance(value, Mapping):
        raise PlaybookError(f"{label}: parameters for {key} must be a mapping")
    return ctx.registry.canonical(module), {**(value or {}), **args}


def parse_task(data: Any, ctx: LoaderContext, index: int = 0) -> Task:
    """Build a Task from one task mapping.

    Raises:
        PlaybookError: If the mapping is malformed
        UnknownTaskTypeError: If the task names no known type or module
    """
    if not isinstance(data, Mapping):
        raise PlaybookError(f"Task #{index + 1} must be a mapping, got {type(data).__name__}")
    label = f"Task '{data.get('name')}'" if data.get("name") else f"Task #{index + 1}"
    task_type, parameters = _type_and_parameters(data, ctx, label)

    notify = data.get("notify") or ()
    if isinstance(notify, str):
        notify = (notify,)
    retries = data.get("retries")
    idempotent = data.get("idempotent")

    return Task(
        name=str(data.get("name") or task_type),
        type=task_type,
        parameters=parameters,
        loop_items=data.get("loop", data.get("with_items")),
        condition=_condition(data.get("when")),
        notifies=tuple(str(n) for n in notify),
        become=_become(data, ctx.become),
        ignore_errors=_is_true(data.get("ignore_errors", False)),
        register=data.get("register"),
        retries=int(retries) if retries is not None else None,
        idempotent=_is_true(idempotent) if idempotent is not None else None,
    )


# Plays ----------------------------------------------------------------------


def _load_vars_files(files: Any, base_dir: Path) -> dict[str, Any]:
    variables: dict[str, Any] = {}
    for name in [files] if isinstance(files, str) else files or []:
        path = base_dir / name
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except OSError as e:
            raise PlaybookError(f"Cannot read vars file {path}: {e}") from e
        if not isinstance(data, dict):
            raise PlaybookError(f"Vars file {path} must contain a mapping")
        variables.update(data)
    return variables


def parse_play(data: Mapping[str, Any], base_dir: Path, registry: HandlerRegistry, index: int = 0) -> Play:
    unknown = sorted(set(data) - PLAY_KEYS)
    if unknown:
        raise PlaybookError(f"Play #{index + 1}: unknown key(s): {', '.join(unknown)}")

    become = None
    if _is_true(data.get("become", False)):
        become = BecomeSpec(user=data.get("become_user", "root"), method=data.get("become_method", "sudo"))
    ctx = LoaderContext(base_dir=base_dir, registry=registry, become=become)

    tasks = data.get("tasks") or []
    handlers = data.get("handlers") or []
    if not isinstance(tasks, list) or not isinstance(handlers, list):
        raise PlaybookError(f"Play #{index + 1}: tasks and handlers must be lists")
    play_vars = dict(data.get("vars") or {})
    play_vars.update(_load_vars_files(data.get("vars_files"), base_dir))

    hosts = data.get("hosts", "all")
    return Play(
        name=str(data.get("name") or f"play {index + 1}"),
        hosts=",".join(hosts) if isinstance(hosts, list) else str(hosts),
        vars=play_vars,
        defaults=dict(data.get("defaults") or {}),
        tasks=[parse_task(t, ctx, i) for i, t in enumerate(tasks)],
        handlers=[parse_task(h, ctx, i) for i, h in enumerate(handlers)],
    )


def parse_playbook(
    data: Any, base_dir: str | Path = ".", registry: HandlerRegistry | None = None
) -> list[Play]:
    """Parse an already-loaded document into plays."""
    registry = registry or default_registry()
    base = Path(base_dir)
    if data is None:
        raise PlaybookError("Playbook is empty")
    if isinstance(data, Mapping):
        return [parse_play(data, base, registry)]
    if not isinstance(data, list):
        raise PlaybookError(f"Playbook must be a list or mapping, got {type(data).__name__}")
    if all(isinstance(d, Mapping) and ("tasks" in d or "hosts" in d) for d in data):
        return [parse_play(d, base, registry, i) for i, d in enumerate(data)]
    return [parse_play({"tasks": data}, base, registry)]


def load_playbook(path: str | Path, registry: HandlerRegistry | None = None) -> list[Play]:
    """Load a YAML playbook file.

    Raises:
        PlaybookError: If the file cannot be read or parsed
        UnknownTaskTypeError: If a task names no known type or module

    Example:
        >>> plays = load_playbook("site.yml")
        >>> plays[0].tasks[0].type
        'user-ensure'
    """
    playbook_path = Path(path)
    try:
        data = yaml.safe_load(playbook_path.read_text())
    except OSError as e:
        raise PlaybookError(f"Cannot read playbook {playbook_path}: {e}") from e
    except yaml.YAMLError as e:
        raise PlaybookError(f"Invalid YAML in {playbook_path}: {e}") from e

    plays = parse_playbook(data, playbook_path.parent, registry)
    for play in plays:
        play.source = playbook_path
    logger.debug(f"Loaded {len(plays)} play(s) from {playbook_path}")
    return plays
