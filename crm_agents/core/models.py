"""Core data models shared across orchestrator components."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Lower rank is dequeued first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


class ThoughtType(str, Enum):
    PLANNING = "planning"
    REASONING = "reasoning"
    ACTION = "action"
    REFLECTION = "reflection"


@dataclass(slots=True)
class Task:
    """Unit of agent work; retained in memory for the process lifetime."""

    type: str
    input: Dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    id: Optional[str] = None
    status: TaskStatus = TaskStatus.QUEUED
    agent_id: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def start(self, agent_id: str) -> None:
        self.agent_id = agent_id
        self.status = TaskStatus.PROCESSING
        self.updated_at = utcnow()

    def complete(self, result: Any) -> None:
        self.status = TaskStatus.COMPLETED
        self.result = result
        self.completed_at = self.updated_at = utcnow()

    def fail(self, error: str) -> None:
        self.status = TaskStatus.FAILED
        self.error = error
        self.completed_at = self.updated_at = utcnow()


@dataclass(slots=True)
class AgentCapability:
    id: str
    name: str
    enabled: bool = True


@dataclass(slots=True)
class AgentThought:
    """One entry of an agent's reasoning trace."""

    type: ThoughtType
    content: str
    id: str = field(default_factory=lambda: new_id("thought"))
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentMetrics:
    tasks_completed: int = 0
    tasks_failed: int = 0
    success_rate: float = 0.0
    average_response_time_ms: float = 0.0
    total_thoughts: int = 0
    last_error: Optional[str] = None

    def record(self, success: bool, response_time_ms: float) -> None:
        finished = self.tasks_completed + self.tasks_failed
        self.average_response_time_ms = (
            self.average_response_time_ms * finished + response_time_ms
        ) / (finished + 1)
        if success:
            self.tasks_completed += 1
        else:
            self.tasks_failed += 1
        self.success_rate = self.tasks_completed / (finished + 1)


@dataclass(slots=True)
class AgentConfig:
    """Payload used by the orchestrator when building an agent from its catalog."""

    name: str
    type: str
    kind: str = "echo"
    agent_id: Optional[str] = None
    capabilities: List[AgentCapability] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentDescriptor:
    """Descriptor kept by the orchestrator for each registered agent."""

    agent_id: str
    name: str
    type: str
    kind: str = "echo"
    capabilities: List[AgentCapability] = field(default_factory=list)
    status: AgentStatus = AgentStatus.IDLE
    metrics: AgentMetrics = field(default_factory=AgentMetrics)
    thoughts: List[AgentThought] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: AgentConfig) -> AgentDescriptor:
        return cls(
            agent_id=config.agent_id or new_id("agent"),
            name=config.name,
            type=config.type,
            kind=config.kind,
            capabilities=list(config.capabilities),
            metadata=dict(config.metadata),
        )


class HandoffStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass(slots=True)
class Handoff:
    """Transfer of responsibility for a task between two agents."""

    from_agent: str
    to_agent: str
    task_id: str
    reason: str
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("handoff"))
    status: HandoffStatus = HandoffStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)


class CollaborationType(str, Enum):
    CONSULTATION = "consultation"
    DATA_REQUEST = "data_request"
    APPROVAL = "approval"
    ASSISTANCE = "assistance"


class CollaborationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass(slots=True)
class Collaboration:
    """Peer request between two agents; never transfers task ownership."""

    requesting_agent: str
    target_agent: str
    type: CollaborationType
    description: str
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("collab"))
    status: CollaborationStatus = CollaborationStatus.PENDING
    response: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class OrchestratorEvent:
    """Notification published on the event bus."""

    type: str
    subject_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class OrchestrationMetrics:
    queued_tasks: int
    processing_tasks: int
    completed_tasks: int
    failed_tasks: int
    agent_count: int
    uptime_seconds: float
    is_running: bool
    total_workflows: int
    active_executions: int
    completed_executions: int
    failed_executions: int
    average_execution_time_ms: float
    success_rate: float
    handoff_count: int
    collaboration_count: int
    agent_utilization: Dict[str, int] = field(default_factory=dict)
    bottlenecks: List[str] = field(default_factory=list)
