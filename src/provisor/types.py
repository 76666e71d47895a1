"""Type definitions for provisor.

This module defines the core data types shared by the plan builder, the
execution engine and the task handlers. Tasks and plan steps are frozen
dataclasses: once a plan is built nothing downstream may alter it.
"""

from dataclasses import dataclass, field
from enum import Enum
from getpass import getuser
from typing import Any


@dataclass
class HostConfig:
    """Connection details for one target host.

    Follows Ansible inventory conventions for the connection fields so that
    existing inventories load unchanged.

    Attributes:
        name: Unique identifier for the host (e.g., "web01")
        ansible_host: Target hostname or IP address for SSH connection
        ansible_port: SSH port number (default: 22)
        ansible_user: Username for SSH authentication (default: current user)
        ansible_connection: "ssh" for remote, "local" for localhost
        vars: Host variables, merged over group variables

    Example:
        >>> host = HostConfig(name="web01", ansible_host="192.168.1.10")
        >>> host.ansible_port
        22
        >>> host.is_local
        False
    """

    name: str
    ansible_host: str
    ansible_port: int = 22
    ansible_user: str = field(default_factory=getuser)
    ansible_connection: str = "ssh"
    vars: dict[str, Any] = field(default_factory=dict)

    @property
    def is_local(self) -> bool:
        """Check if this host uses local execution (no SSH)."""
        return self.ansible_connection == "local"

    @property
    def is_remote(self) -> bool:
        """Check if this host uses remote execution (SSH)."""
        return not self.is_local

    def get_var(self, key: str, default: Any = None) -> Any:
        """Get a host variable by key with optional default."""
        return self.vars.get(key, default)

    def set_var(self, key: str, value: Any) -> None:
        """Set a host variable."""
        self.vars[key] = value


@dataclass(frozen=True)
class BecomeSpec:
    """Privilege escalation for a task.

    Attributes:
        user: Account the task's commands run as (default: root)
        method: Escalation command; only "sudo" is supported
    """

    user: str = "root"
    method: str = "sudo"


@dataclass(frozen=True)
class Task:
    """A declarative desired-state assertion, as written in a task document.

    Attributes:
        name: Display name; may contain ``{{ }}`` references
        type: Task handler key (e.g., "package-ensure")
        parameters: Handler parameters, possibly templated
        loop_items: Items to expand the task over, or None
        condition: Expression evaluated at run time, or None
        notifies: Names of deferred handlers to trigger on change
        become: Privilege escalation, or None
        ignore_errors: Continue the run when this task fails
        register: Store the step result in the bindings under this name
        retries: Per-task retry override (None uses the run default)
        idempotent: Override the handler's idempotence flag for retries
    """

    name: str
    type: str
    parameters: dict[str, Any] = field(default_factory=dict)
    loop_items: Any = None
    condition: str | None = None
    notifies: tuple[str, ...] = ()
    become: BecomeSpec | None = None
    ignore_errors: bool = False
    register: str | None = None
    retries: int | None = None
    idempotent: bool | None = None


@dataclass(frozen=True)
class PlanStep:
    """One fully resolved, ordered unit of execution derived from a Task.

    ``deferred`` is set when the parameters reference names that only exist
    once earlier steps have run (facts or registered results); the engine
    renders those parameters immediately before executing the step.
    """

    index: int
    name: str
    type: str
    parameters: dict[str, Any]
    task_name: str
    item: Any = None
    has_item: bool = False
    condition: str | None = None
    notifies: tuple[str, ...] = ()
    become: BecomeSpec | None = None
    ignore_errors: bool = False
    register: str | None = None
    retries: int | None = None
    idempotent: bool | None = None
    deferred: bool = False


class Outcome(str, Enum):
    """Terminal outcome of a step."""

    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepState(str, Enum):
    """States a step passes through inside the execution engine."""

    PENDING = "pending"
    PROBING = "probing"
    APPLYING = "applying"
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {StepState.OK, StepState.CHANGED, StepState.FAILED, StepState.SKIPPED}
)


@dataclass(frozen=True)
class CommandResult:
    """Result of a command executed through a connection."""

    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class DesiredStateDelta:
    """What a probe found: whether applying would change the host.

    Attributes:
        has_delta: True when apply would change remote state
        reasons: Short descriptions of each difference found
        facts: Values discovered by the probe, published on OK
    """

    has_delta: bool
    reasons: list[str] = field(default_factory=list)
    facts: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def none(cls, **facts: Any) -> "DesiredStateDelta":
        """No change needed."""
        return cls(has_delta=False, facts=dict(facts))

    @classmethod
    def of(cls, *reasons: str, **facts: Any) -> "DesiredStateDelta":
        """A change is needed for the given reasons."""
        return cls(has_delta=True, reasons=list(reasons), facts=dict(facts))


@dataclass
class ApplyOutcome:
    """What an apply did."""

    changed: bool
    detail: str = ""
    facts: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskResult:
    """Terminal result of one step. Immutable once created.

    Attributes:
        step: The step that produced this result
        outcome: ok, changed, failed or skipped
        error: Error message, verbatim, when failed
        error_type: ErrorTypes classification when failed
        duration: Wall time spent on the step in seconds
        attempts: Number of probe/apply attempts made
        detail: Handler-provided description of what changed
        facts: Facts the step published into the bindings
        handler: True when the step ran as a deferred handler
    """

    step: PlanStep
    outcome: Outcome
    error: str | None = None
    error_type: str | None = None
    duration: float = 0.0
    attempts: int = 0
    detail: str = ""
    facts: dict[str, Any] = field(default_factory=dict)
    handler: bool = False

    @property
    def name(self) -> str:
        return self.step.name

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED

    @property
    def changed(self) -> bool:
        return self.outcome is Outcome.CHANGED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "name": self.step.name,
            "type": self.step.type,
            "outcome": self.outcome.value,
            "duration": round(self.duration, 3),
            "attempts": self.attempts,
        }
        if self.handler:
            data["handler"] = True
        if self.detail:
            data["detail"] = self.detail
        if self.error is not None:
            data["error"] = self.error
            data["error_type"] = self.error_type
        return data
