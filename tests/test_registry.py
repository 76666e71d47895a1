"""Tests for the task handler registry."""

import pytest

from provisor.exceptions import ParameterError, UnknownTaskTypeError
from provisor.handlers import BUILTIN_HANDLERS
from provisor.registry import HandlerRegistry, default_registry

BUILTIN_TYPES = [
    "credential-ensure",
    "directory-ensure",
    "file-attributes-ensure",
    "file-content-ensure",
    "git-checkout",
    "package-ensure",
    "process-supervise",
    "service-ensure",
    "set-fact",
    "shell-command",
    "templated-file-render",
    "user-ensure",
]


def test_default_registry_types():
    assert default_registry().types() == BUILTIN_TYPES


def test_every_builtin_is_registered_once():
    assert len(BUILTIN_HANDLERS) == len(BUILTIN_TYPES)


@pytest.mark.parametrize(
    "alias,canonical",
    [("apt", "package-ensure"), ("service", "service-ensure"), ("shell", "shell-command"), ("set_fact", "set-fact")],
)
def test_aliases(alias, canonical):
    registry = default_registry()
    assert alias in registry
    assert registry.canonical(alias) == canonical
    assert registry.resolve(alias) is registry.resolve(canonical)


def test_unknown_type():
    with pytest.raises(UnknownTaskTypeError, match="Unknown task type 'teleport'"):
        HandlerRegistry().resolve("teleport")


def test_register_replaces(scripted):
    registry = default_registry()
    registry.register("package-ensure", scripted)
    assert registry.resolve("package-ensure") is scripted


def test_only_shell_command_is_non_idempotent():
    registry = default_registry()
    assert [t for t in registry.types() if not registry.resolve(t).idempotent] == ["shell-command"]


def test_rollback_is_optional():
    handler = default_registry().resolve("package-ensure")
    assert not handler.supports_rollback


class TestValidate:
    """Tests for the shared parameter schema check."""

    def test_missing_required(self):
        handler = default_registry().resolve("user-ensure")
        with pytest.raises(ParameterError, match="missing required parameter"):
            handler.validate({"shell": "/bin/bash"})

    def test_unknown_parameter(self):
        handler = default_registry().resolve("directory-ensure")
        with pytest.raises(ParameterError, match="unsupported parameter"):
            handler.validate({"path": "/x", "colour": "blue"})

    def test_choice(self):
        handler = default_registry().resolve("package-ensure")
        with pytest.raises(ParameterError, match="state must be one of"):
            handler.validate({"name": "git", "state": "installed"})

    def test_valid(self):
        default_registry().resolve("service-ensure").validate({"name": "nginx", "state": "started", "enabled": True})
