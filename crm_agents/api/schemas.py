"""Request bodies accepted by the orchestrator endpoint."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from crm_agents.core.models import AgentCapability, AgentConfig, CollaborationType, TaskPriority
from crm_agents.orchestration.workflows import StepCondition, WorkflowStep, WorkflowTrigger


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StepConditionIn(ApiModel):
    path: str = Field(..., min_length=1)
    op: Literal["==", "!=", ">", ">=", "<", "<=", "in", "exists"] = "exists"
    value: Any = None


class WorkflowStepIn(ApiModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    agent_type: Optional[str] = Field(None, alias="agentType")
    agent_id: Optional[str] = Field(None, alias="agentId")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    condition: Optional[StepConditionIn] = None
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", gt=0)

    def to_step(self) -> WorkflowStep:
        return WorkflowStep(
            id=self.id,
            name=self.name,
            action=self.action,
            agent_type=self.agent_type,
            agent_id=self.agent_id,
            parameters=dict(self.parameters),
            dependencies=list(self.dependencies),
            condition=StepCondition(**self.condition.model_dump()) if self.condition else None,
            timeout_seconds=self.timeout_seconds,
        )


class WorkflowTriggerIn(ApiModel):
    type: Literal["manual", "event", "schedule"] = "manual"
    event_type: Optional[str] = Field(None, alias="eventType")
    schedule: Optional[str] = None
    enabled: bool = True

    def to_trigger(self) -> WorkflowTrigger:
        return WorkflowTrigger(
            type=self.type,
            event_type=self.event_type,
            schedule=self.schedule,
            enabled=self.enabled,
        )


class CreateWorkflowRequest(ApiModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    steps: List[WorkflowStepIn] = Field(default_factory=list)
    triggers: List[WorkflowTriggerIn] = Field(default_factory=list)
    priority: TaskPriority = TaskPriority.MEDIUM
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", gt=0)

    def workflow_kwargs(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "steps": [step.to_step() for step in self.steps],
            "triggers": [trigger.to_trigger() for trigger in self.triggers],
            "priority": self.priority,
            "timeout_seconds": self.timeout_seconds,
        }


class WorkflowUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    steps: Optional[List[WorkflowStepIn]] = None
    triggers: Optional[List[WorkflowTriggerIn]] = None
    priority: Optional[TaskPriority] = None
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", gt=0)

    # Only timeoutSeconds may be cleared with an explicit null.
    @field_validator("name", "description", "steps", "triggers", "priority")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("may not be null")
        return value

    def patch(self) -> Dict[str, Any]:
        patch: Dict[str, Any] = {}
        for field_name in self.model_fields_set:
            value = getattr(self, field_name)
            if field_name == "steps":
                value = [step.to_step() for step in value]
            elif field_name == "triggers":
                value = [trigger.to_trigger() for trigger in value]
            patch[field_name] = value
        return patch


class UpdateWorkflowRequest(ApiModel):
    workflow_id: str = Field(..., alias="workflowId", min_length=1)
    updates: WorkflowUpdate = Field(default_factory=WorkflowUpdate)


class ExecuteWorkflowRequest(ApiModel):
    workflow_id: str = Field(..., alias="workflowId", min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = Field("api", alias="triggeredBy")
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", gt=0)


class HandoffRequest(ApiModel):
    from_agent: str = Field(..., alias="fromAgent", min_length=1)
    to_agent: str = Field(..., alias="toAgent", min_length=1)
    task_id: str = Field(..., alias="taskId", min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    reason: str = ""


class CollaborationRequest(ApiModel):
    requesting_agent: str = Field(..., alias="requestingAgent", min_length=1)
    target_agent: str = Field(..., alias="targetAgent", min_length=1)
    type: CollaborationType = CollaborationType.CONSULTATION
    description: str = Field(..., min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", gt=0)


class AgentCapabilityIn(ApiModel):
    id: str
    name: str
    enabled: bool = True


class AgentIn(ApiModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    kind: Optional[str] = None
    capabilities: List[AgentCapabilityIn] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_config(self, default_kind: str) -> AgentConfig:
        return AgentConfig(
            agent_id=self.id,
            name=self.name,
            type=self.type,
            kind=self.kind or default_kind,
            capabilities=[AgentCapability(**cap.model_dump()) for cap in self.capabilities],
            metadata=dict(self.metadata),
        )


class RegisterAgentRequest(ApiModel):
    agent: AgentIn


class EnqueueTaskRequest(ApiModel):
    type: str = Field(..., min_length=1)
    input: Dict[str, Any] = Field(default_factory=dict)
    priority: TaskPriority = TaskPriority.MEDIUM
    agent_id: Optional[str] = Field(None, alias="agentId")


class TriggerEventRequest(ApiModel):
    event_type: str = Field(..., alias="eventType", min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class CancelTaskRequest(ApiModel):
    task_id: str = Field(..., alias="taskId", min_length=1)
