"""Plan builder: expands declarative tasks into ordered, resolved steps.

``PlanBuilder.build`` turns a task list plus bindings into the plan the
engine walks. It is pure: it never touches a host, and identical inputs
always produce an identical plan. Everything that can be checked without a
host is checked here so that a bad task document fails before any remote
mutation:

- every ``{{ name }}`` reference resolves (or carries a default)
- every loop is a list
- every task type is registered
- every notified handler is declared

Some names only come into existence while the run executes: facts published
by ``set-fact`` or credential tasks, and results stored with ``register``.
Parameters that reference such a name cannot be rendered yet; the step is
marked ``deferred`` and the engine renders it right before running it. The
rest of the template is still checked here.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .bindings import Bindings, referenced_names, render
from .exceptions import InvalidLoopError, UnknownHandlerError
from .registry import HandlerRegistry
from .types import PlanStep, Task

logger = logging.getLogger(__name__)


@dataclass
class Plan:
    """An ordered plan plus its deferred handlers.

    Attributes:
        steps: Steps in execution order
        handlers: Handler name -> steps, in declaration order
    """

    steps: list[PlanStep] = field(default_factory=list)
    handlers: dict[str, list[PlanStep]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.steps)

    def describe(self) -> list[str]:
        """One line per step, used by ``provisor plan``."""
        lines = []
        for step in self.steps:
            extra = []
            if step.condition is not None:
                extra.append(f"when: {step.condition}")
            if step.notifies:
                extra.append(f"notify: {', '.join(step.notifies)}")
            if step.deferred:
                extra.append("deferred")
            suffix = f"  [{'; '.join(extra)}]" if extra else ""
            lines.append(f"{step.index + 1:3d}. {step.name} ({step.type}){suffix}")
        for name, steps in self.handlers.items():
            for step in steps:
                lines.append(f"  handler {name}: {step.name} ({step.type})")
        return lines


class PlanBuilder:
    """Expands tasks into PlanSteps.

    Example:
        >>> builder = PlanBuilder(default_registry())
        >>> steps = builder.build(tasks, Bindings(play={"log_dir": "/var/log/app"}))
    """

    def __init__(self, registry: HandlerRegistry | None = None) -> None:
        self.registry = registry

    def build(self, tasks: Sequence[Task], bindings: Bindings) -> list[PlanStep]:
        """Expand ``tasks`` into an ordered list of steps.

        Raises:
            UnresolvedVariableError: A referenced variable has no binding
            InvalidLoopError: ``loop_items`` is not a list of items
            UnknownTaskTypeError: No handler is registered for a task type
        """
        steps: list[PlanStep] = []
        runtime: set[str] = set()
        for task in tasks:
            steps.extend(self._expand(task, bindings, runtime, start=len(steps)))
            runtime |= self._runtime_names(task)
        logger.debug(f"Built plan with {len(steps)} step(s) from {len(tasks)} task(s)")
        return steps

    def build_handlers(
        self,
        handlers: Sequence[Task],
        bindings: Bindings,
        tasks: Sequence[Task] = (),
    ) -> dict[str, list[PlanStep]]:
        """Expand deferred handlers, keyed by name in declaration order.

        Handlers run after every task, so they may reference anything any
        task publishes.

        Raises:
            UnknownHandlerError: A task notifies a name not in ``handlers``
        """
        declared = [h.name for h in handlers]
        for task in tasks:
            for name in task.notifies:
                if name not in declared:
                    raise UnknownHandlerError(name, task.name)

        runtime: set[str] = set()
        for task in tasks:
            runtime |= self._runtime_names(task)

        expanded: dict[str, list[PlanStep]] = {}
        for handler in handlers:
            if handler.name in expanded:
                logger.warning(f"Handler '{handler.name}' declared twice; keeping the first")
                continue
            expanded[handler.name] = self._expand(handler, bindings, runtime, start=0)
            runtime |= self._runtime_names(handler)
        return expanded

    def build_plan(
        self,
        tasks: Sequence[Task],
        bindings: Bindings,
        handlers: Sequence[Task] = (),
    ) -> Plan:
        """Build the steps and the handlers in one call."""
        return Plan(
            steps=self.build(tasks, bindings),
            handlers=self.build_handlers(handlers, bindings, tasks),
        )

    def _expand(
        self, task: Task, bindings: Bindings, runtime: set[str], start: int
    ) -> list[PlanStep]:
        task_type = task.type
        if self.registry is not None:
            self.registry.resolve(task_type)
            task_type = self.registry.canonical(task_type)

        if task.loop_items is None:
            return [self._step(task, task_type, bindings, runtime, start, None, False)]

        items = self._loop_items(task, bindings)
        return [
            self._step(task, task_type, bindings.scoped(item=item), runtime, start + offset, item, True)
            for offset, item in enumerate(items)
        ]

    def _step(
        self,
        task: Task,
        task_type: str,
        scope: Bindings,
        runtime: set[str],
        index: int,
        item: Any,
        has_item: bool,
    ) -> PlanStep:
        parameters, deferred = self._resolve(task.parameters, scope, runtime)
        name, _ = self._resolve(task.name, scope, runtime)
        name = str(name)
        if has_item and "item" not in referenced_names(task.name):
            name = f"{name} ({_item_label(item)})"

        return PlanStep(
            index=index,
            name=name,
            type=task_type,
            parameters=parameters,
            task_name=task.name,
            item=item,
            has_item=has_item,
            condition=task.condition,
            notifies=tuple(task.notifies),
            become=task.become,
            ignore_errors=task.ignore_errors,
            register=task.register,
            retries=task.retries,
            idempotent=task.idempotent,
            deferred=deferred,
        )

    def _resolve(self, value: Any, scope: Bindings, runtime: set[str]) -> tuple[Any, bool]:
        """Render ``value`` now, or validate it and defer it to run time."""
        pending = referenced_names(value) & runtime
        if not pending:
            return render(value, scope), False
        render(value, scope, placeholders=pending)
        return value, True

    def _loop_items(self, task: Task, bindings: Bindings) -> list[Any]:
        items = task.loop_items
        if isinstance(items, str):
            items = render(items, bindings)
        if isinstance(items, (str, bytes)) or isinstance(items, Mapping) or not isinstance(items, Sequence):
            raise InvalidLoopError(
                f"Task '{task.name}': loop must be a list, got {type(items).__name__}",
                task=task.name,
            )
        return [render(item, bindings) for item in items]

    def _runtime_names(self, task: Task) -> set[str]:
        names: set[str] = set()
        if task.register:
            names.add(task.register)
        if self.registry is not None:
            names |= self.registry.resolve(task.type).declared_facts(task.parameters)
        elif task.type == "set-fact":
            names |= set(task.parameters)
        return names


def _item_label(item: Any) -> str:
    if isinstance(item, Mapping):
        for key in ("name", "path", "key"):
            if key in item:
                return str(item[key])
    return str(item)
