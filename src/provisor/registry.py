"""Task handler registry for provisor.

A task's ``type`` selects a handler from the registry. Every handler
implements the same two-phase contract:

- ``probe`` inspects the host read-only and reports whether applying would
  change anything (a DesiredStateDelta).
- ``apply`` performs the change and reports what it did (an ApplyOutcome).

Handlers must make ``apply`` a no-op when no delta exists, because the
engine re-probes and may re-apply after a transient failure. Handlers that
cannot promise this (``shell-command``) set ``idempotent = False`` and the
engine never retries them automatically.

Usage:
    from provisor.registry import default_registry

    registry = default_registry()
    handler = registry.resolve("package-ensure")
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from .connection import Connection
from .exceptions import ParameterError, UnknownTaskTypeError
from .facts import FactCache
from .types import ApplyOutcome, DesiredStateDelta

logger = logging.getLogger(__name__)


class TaskHandler(ABC):
    """Base class for task handlers.

    Class attributes:
        name: Registry key for the handler
        idempotent: False if re-applying may repeat side effects
        required: Parameter names that must be present
        optional: Parameter names that may be present
        choices: Allowed values for enumerated parameters
        needs_bindings: True if the engine should pass the run variables
            as a ``variables`` parameter
    """

    name: str = ""
    idempotent: bool = True
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    choices: Mapping[str, Iterable[Any]] = {}
    needs_bindings: bool = False

    def validate(self, parameters: Mapping[str, Any]) -> None:
        """Check ``parameters`` against the handler's schema.

        Called by the engine immediately before ``probe``.

        Raises:
            ParameterError: On missing, unknown or out-of-range parameters
        """
        missing = [p for p in self.required if parameters.get(p) in (None, "", [])]
        if missing:
            raise ParameterError(
                f"{self.name}: missing required parameter(s): {', '.join(missing)}"
            )
        known = set(self.required) | set(self.optional)
        unknown = sorted(set(parameters) - known)
        if unknown:
            raise ParameterError(f"{self.name}: unsupported parameter(s): {', '.join(unknown)}")
        for key, allowed in self.choices.items():
            if key in parameters and parameters[key] not in allowed:
                allowed_str = ", ".join(str(a) for a in allowed)
                raise ParameterError(
                    f"{self.name}: {key} must be one of {allowed_str}, got {parameters[key]!r}"
                )

    def declared_facts(self, parameters: Mapping[str, Any]) -> set[str]:
        """Names this task will publish into the bindings when it runs."""
        return set()

    @property
    def supports_rollback(self) -> bool:
        return type(self).rollback is not TaskHandler.rollback

    @abstractmethod
    async def probe(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> DesiredStateDelta:
        """Determine, without side effects, whether apply would change the host."""

    @abstractmethod
    async def apply(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> ApplyOutcome:
        """Bring the host to the desired state."""

    async def rollback(
        self, parameters: Mapping[str, Any], connection: Connection, facts: FactCache
    ) -> None:
        """Undo a partially applied change. Optional capability."""
        raise NotImplementedError(f"{self.name} does not support rollback")


class HandlerRegistry:
    """Maps task type names to handler instances."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._aliases: dict[str, str] = {}

    def register(self, task_type: str, handler: TaskHandler, aliases: Iterable[str] = ()) -> None:
        """Register ``handler`` for ``task_type``, replacing any previous one."""
        if task_type in self._handlers:
            logger.debug(f"Replacing handler for task type '{task_type}'")
        self._handlers[task_type] = handler
        for alias in aliases:
            self._aliases[alias] = task_type

    def resolve(self, task_type: str) -> TaskHandler:
        """Return the handler for ``task_type``.

        Raises:
            UnknownTaskTypeError: If nothing is registered under that name
        """
        key = self._aliases.get(task_type, task_type)
        try:
            return self._handlers[key]
        except KeyError:
            raise UnknownTaskTypeError(task_type) from None

    def canonical(self, task_type: str) -> str:
        """Map an alias to its registered type name."""
        return self._aliases.get(task_type, task_type)

    def __contains__(self, task_type: str) -> bool:
        return self.canonical(task_type) in self._handlers

    def types(self) -> list[str]:
        """Registered type names, sorted."""
        return sorted(self._handlers)

    def aliases(self) -> dict[str, str]:
        return dict(self._aliases)


def default_registry() -> HandlerRegistry:
    """Create a registry populated with the built-in handlers."""
    from .handlers import BUILTIN_HANDLERS

    registry = HandlerRegistry()
    for handler_cls, aliases in BUILTIN_HANDLERS:
        registry.register(handler_cls.name, handler_cls(), aliases=aliases)
    return registry
