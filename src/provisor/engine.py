"""Execution engine: walks a plan against one host.

Each step moves through a small state machine:

    PENDING -> SKIPPED                    condition evaluated false
    PENDING -> PROBING -> OK              probe found no delta
    PROBING -> APPLYING -> CHANGED        probe found a delta, apply ran
    APPLYING -> PROBING                   transient failure, retries remain
    PROBING | APPLYING -> FAILED

Steps run strictly one after another: later steps may depend on state that
earlier ones changed. A failed step halts the run unless the task sets
``ignore_errors``; deferred handlers that were already triggered still run
after a halt, but not after a cancellation. When the final apply of a step
fails and its handler supports rollback, the engine asks it to undo the
partial change.

The engine owns its connection and fact cache for the length of the run and
closes the connection when the run ends. Runtime errors never escape
``run``: they become failed TaskResults.
"""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any

from .bindings import Bindings, evaluate_condition, render
from .connection import Connection
from .exceptions import (
    ApplyError,
    AuthError,
    ConnectionError,
    ErrorTypes,
    ProvisorError,
    StepCancelledError,
    TransientError,
)
from .facts import FactCache
from .progress import NullProgressReporter, ProgressReporter
from .registry import HandlerRegistry, TaskHandler, default_registry
from .report import RunReport, RunReporter
from .retry import RetryConfig, RetryState, classify_exception, is_transient_error
from .types import Outcome, PlanStep, StepState, TaskResult

logger = logging.getLogger(__name__)

# Command output a failed step keeps for ``register``
FAILURE_OUTPUT = ("stdout", "stderr", "rc")

TRANSITIONS: dict[StepState, set[StepState]] = {
    StepState.PENDING: {StepState.SKIPPED, StepState.PROBING, StepState.FAILED},
    StepState.PROBING: {StepState.OK, StepState.APPLYING, StepState.CHANGED, StepState.FAILED, StepState.PROBING},
    StepState.APPLYING: {StepState.CHANGED, StepState.OK, StepState.PROBING, StepState.FAILED},
}


class ExecutionEngine:
    """Runs plan steps against one host.

    Attributes:
        connection: Exclusively owned transport to the host
        registry: Task handler registry
        retry_config: Default retry policy for transient failures
        check_mode: Probe only; report would-be changes without applying
        facts: Per-run fact cache for the host
        history: (step name, from state, to state) for every transition

    Example:
        >>> engine = ExecutionEngine(connection, default_registry())
        >>> report = await engine.run(plan.steps, bindings, plan.handlers)
        >>> report.success
        True
    """

    def __init__(
        self,
        connection: Connection,
        registry: HandlerRegistry | None = None,
        retry_config: RetryConfig | None = None,
        check_mode: bool = False,
        progress: ProgressReporter | None = None,
        host: str | None = None,
    ) -> None:
        self.connection = connection
        self.registry = registry or default_registry()
        self.retry_config = retry_config or RetryConfig()
        self.check_mode = check_mode
        self.progress = progress or NullProgressReporter()
        self.host = host or connection.name
        self.facts = FactCache(self.host)
        self.history: list[tuple[str, StepState, StepState]] = []
        self._cancelled = False
        self._registered: dict[str, list[dict[str, Any]]] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop the run at the next step boundary.

        The step in progress finishes (an apply is never interrupted); the
        next step is recorded as failed with StepCancelledError.
        """
        logger.warning(f"[{self.host}] Cancellation requested")
        self._cancelled = True

    async def run(
        self,
        steps: Sequence[PlanStep],
        bindings: Bindings,
        handlers: Mapping[str, Sequence[PlanStep]] | None = None,
    ) -> RunReport:
        """Execute ``steps`` then any triggered ``handlers``.

        Raises:
            UnknownTaskTypeError: Before any remote operation, if a step's
                type is not registered
        """
        handlers = handlers or {}
        reporter = RunReporter(self.host)
        notified: set[str] = set()
        halted = False
        try:
            for step in [*steps, *(s for group in handlers.values() for s in group)]:
                self.registry.resolve(step.type)
            halted = await self._run_steps(steps, bindings, reporter, notified, handler=False)
            if not self._cancelled:
                handlers_halted = await self._run_handlers(handlers, bindings, reporter, notified)
                halted = halted or handlers_halted
        finally:
            await self.connection.close()

        report = reporter.finalize(halted=halted, cancelled=self._cancelled)
        logger.info(
            f"[{self.host}] ok={report.ok_count} changed={report.changed_count} "
            f"failed={report.failed_count} skipped={report.skipped_count}"
            + (" (halted)" if report.halted else "")
        )
        return report

    async def _run_steps(
        self,
        steps: Sequence[PlanStep],
        bindings: Bindings,
        reporter: RunReporter,
        notified: set[str],
        handler: bool,
    ) -> bool:
        """Run steps in order; return True if the sequence halted."""
        for step in steps:
            if self._cancelled:
                result = self._cancelled_result(step, handler)
                reporter.record(result)
                self.progress.on_step_complete(self.host, result)
                return True

            result = await self.execute_step(step, bindings, handler=handler)
            reporter.record(result)
            self.progress.on_step_complete(self.host, result)

            if result.changed:
                for name in step.notifies:
                    if name not in notified:
                        logger.debug(f"[{self.host}] '{step.name}' notified handler '{name}'")
                    notified.add(name)
            if result.failed and not step.ignore_errors:
                logger.warning(f"[{self.host}] Halting after failed step '{step.name}'")
                return True
        return False

    async def _run_handlers(
        self,
        handlers: Mapping[str, Sequence[PlanStep]],
        bindings: Bindings,
        reporter: RunReporter,
        notified: set[str],
    ) -> bool:
        """Run each notified handler once, in declaration order."""
        for name, steps in handlers.items():
            if name not in notified:
                continue
            logger.info(f"[{self.host}] Running handler '{name}'")
            if await self._run_steps(steps, bindings, reporter, notified, handler=True):
                return True
        return False

    async def execute_step(self, step: PlanStep, bindings: Bindings, handler: bool = False) -> TaskResult:
        """Drive one step to a terminal state and return its result.

        A step with ``register`` leaves its result in the bindings whatever
        the outcome, so later conditions can test ``skipped`` or ``failed``.
        """
        result = await self._drive(step, bindings, handler)
        if step.register:
            self._register(step, result, bindings)
        return result

    async def _drive(self, step: PlanStep, bindings: Bindings, handler: bool) -> TaskResult:
        start = time.monotonic()
        state = StepState.PENDING
        retry_state = RetryState()

        def transition(new: StepState) -> None:
            nonlocal state
            if new not in TRANSITIONS.get(state, set()):
                raise RuntimeError(f"Illegal step transition {state.value} -> {new.value}")
            self.history.append((step.name, state, new))
            logger.debug(f"[{self.host}] {step.name}: {state.value} -> {new.value}")
            state = new

        def finish(outcome: Outcome, error: ProvisorError | None = None, **kwargs: Any) -> TaskResult:
            transition(StepState(outcome.value))
            if error is not None and "facts" not in kwargs:
                kwargs["facts"] = {k: error.details[k] for k in FAILURE_OUTPUT if k in error.details}
            return TaskResult(
                step=step,
                outcome=outcome,
                error=error.message if error else None,
                error_type=error.error_type if error else None,
                duration=time.monotonic() - start,
                attempts=retry_state.attempts,
                handler=handler,
                **kwargs,
            )

        scope = bindings.scoped(item=step.item) if step.has_item else bindings
        try:
            if step.condition is not None and not evaluate_condition(step.condition, scope):
                logger.debug(f"[{self.host}] {step.name}: condition false, skipping")
                return finish(Outcome.SKIPPED)
        except ProvisorError as e:
            return finish(Outcome.FAILED, e)

        transition(StepState.PROBING)
        try:
            task_handler = self.registry.resolve(step.type)
            parameters = self._parameters(step, task_handler, scope)
            task_handler.validate(parameters)
        except ProvisorError as e:
            return finish(Outcome.FAILED, e)

        connection = self.connection.with_become(step.become)
        retry = self._retry_for(step)
        retryable = task_handler.idempotent if step.idempotent is None else step.idempotent
        max_attempts = retry.max_retries + 1 if retryable else 1

        while True:
            retry_state.attempts += 1
            try:
                delta = await task_handler.probe(parameters, connection, self.facts)
                if not delta.has_delta:
                    result = finish(Outcome.OK, facts=dict(delta.facts))
                elif self.check_mode:
                    result = finish(
                        Outcome.CHANGED,
                        detail="would change: " + "; ".join(delta.reasons),
                        facts=dict(delta.facts),
                    )
                else:
                    transition(StepState.APPLYING)
                    outcome = await task_handler.apply(parameters, connection, self.facts)
                    result = finish(
                        Outcome.CHANGED if outcome.changed else Outcome.OK,
                        detail=outcome.detail or "; ".join(delta.reasons),
                        facts={**delta.facts, **outcome.facts},
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = _as_error(e)
                error_type = retry_state.record(error)
                if (
                    retry_state.attempts < max_attempts
                    and retry.should_retry_error(error_type)
                    and not self._cancelled
                ):
                    delay = retry.get_delay(retry_state.attempts)
                    logger.info(
                        f"[{self.host}] {step.name}: {error_type} on attempt "
                        f"{retry_state.attempts}/{max_attempts}, retrying in {delay:.1f}s: {error}"
                    )
                    self.progress.on_step_retry(
                        self.host, step.name, retry_state.attempts, max_attempts, str(error), delay
                    )
                    await asyncio.sleep(delay)
                    transition(StepState.PROBING)
                    continue
                retry_state.gave_up = retry_state.attempts >= max_attempts and max_attempts > 1
                if not isinstance(e, ProvisorError):
                    logger.debug(f"[{self.host}] {step.name}: handler raised", exc_info=e)
                detail = ""
                if state is StepState.APPLYING and task_handler.supports_rollback:
                    detail = await self._rollback(step, task_handler, parameters, connection)
                return finish(Outcome.FAILED, error, detail=detail)

            self._publish(task_handler, parameters, result, bindings)
            return result

    def _parameters(self, step: PlanStep, task_handler: TaskHandler, scope: Bindings) -> dict[str, Any]:
        parameters = render(step.parameters, scope) if step.deferred else step.parameters
        if task_handler.needs_bindings and "variables" not in parameters:
            parameters = {**parameters, "variables": scope.to_dict()}
        return dict(parameters)

    def _retry_for(self, step: PlanStep) -> RetryConfig:
        if step.retries is None:
            return self.retry_config
        return replace(self.retry_config, max_retries=step.retries)

    async def _rollback(
        self,
        step: PlanStep,
        task_handler: TaskHandler,
        parameters: Mapping[str, Any],
        connection: Connection,
    ) -> str:
        """Undo a failed apply; the apply error stays the step's error."""
        logger.warning(f"[{self.host}] {step.name}: apply failed, rolling back")
        try:
            await task_handler.rollback(parameters, connection, self.facts)
        except Exception as e:
            logger.error(f"[{self.host}] {step.name}: rollback failed: {e}")
            return f"rollback failed: {e}"
        return "rolled back"

    def _publish(
        self,
        task_handler: TaskHandler,
        parameters: Mapping[str, Any],
        result: TaskResult,
        bindings: Bindings,
    ) -> None:
        """Write the facts the handler declares into the bindings."""
        for name in task_handler.declared_facts(parameters):
            if name in result.facts:
                bindings.set_fact(name, result.facts[name])

    def _register(self, step: PlanStep, result: TaskResult, bindings: Bindings) -> None:
        value = {
            "changed": result.changed,
            "failed": result.failed,
            "skipped": result.outcome is Outcome.SKIPPED,
            "outcome": result.outcome.value,
            **result.facts,
        }
        if result.error is not None:
            value["error"] = result.error
        if step.has_item:
            key = f"{step.task_name}\0{step.register}"
            items = self._registered.setdefault(key, [])
            items.append({**value, "item": step.item})
            value = {
                "changed": any(i["changed"] for i in items),
                "failed": any(i["failed"] for i in items),
                "skipped": all(i["skipped"] for i in items),
                "results": list(items),
            }
        bindings.set_fact(step.register, value)

    def _cancelled_result(self, step: PlanStep, handler: bool) -> TaskResult:
        self.history.append((step.name, StepState.PENDING, StepState.FAILED))
        error = StepCancelledError(f"Run cancelled before '{step.name}'")
        return TaskResult(
            step=step,
            outcome=Outcome.FAILED,
            error=error.message,
            error_type=error.error_type,
            handler=handler,
        )


def _as_error(exc: Exception) -> ProvisorError:
    """Classify a handler exception, keeping its message.

    Transient failures (timeouts, refused or dropped connections, busy
    resources) stay retryable; anything else unexpected is an ApplyError.
    """
    if isinstance(exc, ProvisorError):
        return exc
    message = str(exc) or type(exc).__name__
    error_type = classify_exception(exc)
    if error_type == ErrorTypes.RESOURCE_BUSY:
        return TransientError(message, exception=type(exc).__name__)
    if is_transient_error(error_type):
        error = ConnectionError(message, exception=type(exc).__name__)
        error.error_type = error_type
        return error
    if error_type == ErrorTypes.AUTHENTICATION_FAILED:
        return AuthError(message, exception=type(exc).__name__)
    return ApplyError(message, exception=type(exc).__name__)
