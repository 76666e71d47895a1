"""provisor - declarative host provisioning over SSH.

Tasks describe the desired state of a host; provisor probes each resource,
applies only what differs, and reports ok, changed, failed or skipped per
step.

Quick Start:
    from provisor import Bindings, ExecutionEngine, PlanBuilder, default_registry

    registry = default_registry()
    plan = PlanBuilder(registry).build_plan(tasks, Bindings(play={"user": "deploy"}), handlers)
    report = await ExecutionEngine(connection, registry).run(plan.steps, bindings, plan.handlers)
"""

__version__ = "0.1.0"

from provisor.bindings import Bindings
from provisor.engine import ExecutionEngine
from provisor.plan import Plan, PlanBuilder
from provisor.registry import HandlerRegistry, TaskHandler, default_registry
from provisor.report import RunReport
from provisor.types import Outcome, PlanStep, Task, TaskResult

__all__ = [
    "__version__",
    "Bindings",
    "ExecutionEngine",
    "HandlerRegistry",
    "Outcome",
    "Plan",
    "PlanBuilder",
    "PlanStep",
    "RunReport",
    "Task",
    "TaskHandler",
    "TaskResult",
    "default_registry",
]
