"""Workflow definitions, executions and step ordering."""
from __future__ import annotations

import operator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from crm_agents.core.errors import ValidationError
from crm_agents.core.models import TaskPriority, new_id, utcnow

_MISSING = object()

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "in": lambda left, right: left in right,
}


@dataclass(slots=True)
class StepCondition:
    """Declarative guard evaluated against the execution context.

    ``path`` is a dotted lookup such as ``step_lead_qualification_result.score``.
    A missing path, or a comparison between incompatible types, is false.
    """

    path: str
    op: str = "exists"
    value: Any = None

    def __post_init__(self) -> None:
        if self.op != "exists" and self.op not in _OPERATORS:
            raise ValidationError(f"Unsupported condition operator '{self.op}'")

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        current: Any = context
        for part in self.path.split("."):
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            else:
                current = _MISSING
                break
        if self.op == "exists":
            return current is not _MISSING and current is not None
        if current is _MISSING:
            return False
        try:
            return bool(_OPERATORS[self.op](current, self.value))
        except TypeError:
            return False


@dataclass(slots=True)
class WorkflowStep:
    id: str
    name: str
    action: str
    agent_type: Optional[str] = None
    agent_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    condition: Optional[StepCondition] = None
    timeout_seconds: Optional[float] = None


@dataclass(slots=True)
class WorkflowTrigger:
    type: str = "manual"
    event_type: Optional[str] = None
    schedule: Optional[str] = None
    enabled: bool = True


@dataclass(slots=True)
class Workflow:
    name: str
    steps: List[WorkflowStep] = field(default_factory=list)
    triggers: List[WorkflowTrigger] = field(default_factory=list)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    timeout_seconds: Optional[float] = None
    id: str = field(default_factory=lambda: new_id("workflow"))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def listens_to(self, event_type: str) -> bool:
        return any(
            trigger.enabled and trigger.type == "event" and trigger.event_type == event_type
            for trigger in self.triggers
        )


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class StepExecution:
    step_id: str
    status: StepStatus = StepStatus.PENDING
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[str] = None

    def finish(self, status: StepStatus, *, result: Any = None, error: Optional[str] = None) -> None:
        self.status = status
        self.result = result
        self.error = error
        self.completed_at = utcnow()


@dataclass(slots=True)
class Execution:
    """One concrete run of a workflow."""

    workflow_id: str
    triggered_by: str = "manual"
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("execution"))
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    current_step: Optional[str] = None
    step_executions: List[StepExecution] = field(default_factory=list)
    error: Optional[str] = None

    def finish(self, status: ExecutionStatus, error: Optional[str] = None) -> None:
        if not status.terminal:
            raise ValueError(f"{status.value} is not a terminal execution status")
        if self.completed_at is not None:
            raise RuntimeError(f"Execution {self.id} already finished")
        self.status = status
        self.error = error
        self.completed_at = utcnow()

    @property
    def duration_ms(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000


def validate_steps(steps: Iterable[WorkflowStep]) -> List[WorkflowStep]:
    """Check step ids, bindings and dependencies; return steps in run order."""
    steps = list(steps)
    seen: Dict[str, WorkflowStep] = {}
    for step in steps:
        if not step.id:
            raise ValidationError("Workflow step is missing an id")
        if step.id in seen:
            raise ValidationError(f"Duplicate workflow step id '{step.id}'")
        if not (step.agent_id or step.agent_type):
            raise ValidationError(f"Step '{step.id}' needs an agent_id or agent_type")
        seen[step.id] = step
    for step in steps:
        for dependency in step.dependencies:
            if dependency not in seen:
                raise ValidationError(
                    f"Step '{step.id}' depends on unknown step '{dependency}'"
                )
    return order_steps(steps)


def order_steps(steps: List[WorkflowStep]) -> List[WorkflowStep]:
    """Depth-first ordering: dependencies first, otherwise declared order."""
    by_id = {step.id: step for step in steps}
    ordered: List[WorkflowStep] = []
    visited: set = set()
    visiting: set = set()

    def visit(step: WorkflowStep) -> None:
        if step.id in visiting:
            raise ValidationError(f"Circular dependency detected involving step '{step.id}'")
        if step.id in visited:
            return
        visiting.add(step.id)
        for dependency in step.dependencies:
            if dependency in by_id:
                visit(by_id[dependency])
        visiting.discard(step.id)
        visited.add(step.id)
        ordered.append(step)

    for step in steps:
        visit(step)
    return ordered
