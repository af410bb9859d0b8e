"""Orchestrator owning agents and workflows and draining the task queue."""
from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from crm_agents.agents.base import Agent
from crm_agents.core.cancellation import Deadline
from crm_agents.core.errors import InternalError, NotFoundError, OrchestratorError, ValidationError
from crm_agents.core.events import EventBus
from crm_agents.core.logging import get_logger
from crm_agents.core.models import (
    AgentConfig,
    AgentDescriptor,
    AgentStatus,
    Collaboration,
    CollaborationStatus,
    CollaborationType,
    Handoff,
    HandoffStatus,
    OrchestrationMetrics,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)
from crm_agents.core.result import Err, Ok, Result
from crm_agents.core.task_queue import TaskQueue
from crm_agents.orchestration.workflows import (
    Execution,
    ExecutionStatus,
    StepExecution,
    StepStatus,
    Workflow,
    WorkflowStep,
    WorkflowTrigger,
    validate_steps,
)

logger = get_logger(name=__name__)

AgentFactory = Callable[[AgentDescriptor], Agent]

_WORKFLOW_FIELDS = {"name", "description", "steps", "triggers", "priority", "timeout_seconds"}
_BUSY_AGENT_THRESHOLD = 10
_SLOW_EXECUTION_MS = 300_000


class Orchestrator:
    """Coordinate agents, workflows, handoffs and collaborations.

    All state is process-local. Dispatch is sequential on one event loop; the
    only suspension points are the agents' calls to their model backends.
    """

    def __init__(
        self,
        *,
        queue: Optional[TaskQueue] = None,
        events: Optional[EventBus] = None,
        agent_catalog: Optional[Mapping[str, AgentFactory]] = None,
        dispatch_timeout: Optional[float] = 60.0,
        poll_interval: float = 0.5,
    ) -> None:
        self._queue = queue or TaskQueue()
        self._events = events or EventBus()
        self._agent_catalog: Dict[str, AgentFactory] = dict(agent_catalog or {})
        self._dispatch_timeout = dispatch_timeout
        self._poll_interval = poll_interval
        self._agents: Dict[str, Agent] = {}
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, Execution] = {}
        self._handoffs: Dict[str, Handoff] = {}
        self._collaborations: Dict[str, Collaboration] = {}
        self._running = False
        self._runner: Optional[asyncio.Task[None]] = None
        self._started_at: Optional[float] = None

    @property
    def queue(self) -> TaskQueue:
        return self._queue

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def is_running(self) -> bool:
        return self._running

    # Lifecycle

    async def start(self) -> None:
        """Begin draining the task queue; a second call is a no-op."""
        if self._running:
            return
        self._running = True
        self._started_at = time.monotonic()
        self._runner = asyncio.create_task(self._drain())
        logger.info("orchestrator_started", agents=len(self._agents))

    async def stop(self) -> None:
        """Stop issuing new dispatches and wait for the in-flight one to finish."""
        if not self._running:
            return
        self._running = False
        self._queue.notify()
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner
        self._started_at = None
        logger.info("orchestrator_stopped")

    async def _drain(self) -> None:
        while self._running:
            if await self.process_next():
                continue
            try:
                await asyncio.wait_for(self._queue.wait_for_work(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue

    async def process_next(self) -> bool:
        """Dispatch the next queued task; return False when the queue is empty."""
        task = self._queue.dequeue_next()
        if task is None:
            return False

        agent = self._resolve_task_agent(task)
        if agent is None:
            task.fail("No suitable agent found")
            logger.warning("task_unroutable", task_id=task.id, task_type=task.type)
            self._events.publish("task.updated", task.id, status=task.status.value)
            return True

        try:
            await self._dispatch(agent, task, Deadline(self._dispatch_timeout))
        except OrchestratorError as exc:
            logger.warning("task_failed", task_id=task.id, agent_id=agent.agent_id, error=exc.message)
        return True

    # Tasks

    def enqueue_task(
        self,
        task_type: str,
        input: Optional[Dict[str, Any]] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        agent_id: Optional[str] = None,
    ) -> Result[Task]:
        if agent_id is not None and agent_id not in self._agents:
            return Err(NotFoundError("agent", agent_id))
        task = Task(type=task_type, input=dict(input or {}), priority=priority, agent_id=agent_id)
        try:
            self._queue.enqueue(task)
        except ValidationError as exc:
            return Err(exc)
        self._events.publish("task.updated", task.id, status=task.status.value)
        return Ok(task)

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._queue.get(task_id)

    def list_tasks(self) -> List[Task]:
        return self._queue.list()

    def cancel_task(self, task_id: str) -> Result[Task]:
        task = self._queue.get(task_id)
        if task is None:
            return Err(NotFoundError("task", task_id))
        if not self._queue.cancel(task_id):
            return Err(ValidationError(f"Task {task_id} is already {task.status.value}"))
        self._events.publish("task.updated", task_id, status=task.status.value)
        return Ok(task)

    # Agents

    def register_agent(self, agent: Agent) -> None:
        """Add an agent; an existing agent with the same id is replaced."""
        if agent.agent_id in self._agents:
            logger.info("agent_replaced", agent_id=agent.agent_id)
        self._agents[agent.agent_id] = agent
        self._events.publish("agent.registered", agent.agent_id, name=agent.name, type=agent.type)

    def register_agent_config(self, config: AgentConfig) -> Result[Agent]:
        factory = self._agent_catalog.get(config.kind)
        if factory is None:
            return Err(ValidationError(f"No agent registered for kind '{config.kind}'"))
        agent = factory(AgentDescriptor.from_config(config))
        self.register_agent(agent)
        return Ok(agent)

    def unregister_agent(self, agent_id: str) -> Result[Agent]:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return Err(NotFoundError("agent", agent_id))
        agent.descriptor.status = AgentStatus.OFFLINE
        return Ok(agent)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def list_agents(self) -> List[Agent]:
        return list(self._agents.values())

    def set_agent_status(self, agent_id: str, status: AgentStatus) -> Result[Agent]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return Err(NotFoundError("agent", agent_id))
        agent.descriptor.status = status
        self._events.publish("agent.status_changed", agent_id, status=status.value)
        return Ok(agent)

    def _find_agent_by_type(self, agent_type: str) -> Optional[Agent]:
        for agent in self._agents.values():
            if agent.type == agent_type and agent.status is not AgentStatus.OFFLINE:
                return agent
        return None

    def _find_best_agent(self, task_type: str) -> Optional[Agent]:
        candidates = [agent for agent in self._agents.values() if agent.status is not AgentStatus.OFFLINE]
        if not candidates:
            return None
        task_type = task_type.lower()

        def score(agent: Agent) -> float:
            value = agent.descriptor.metrics.success_rate * 0.4
            if agent.type.lower() in task_type:
                value += 0.3
            value += 0.1 * sum(
                1 for cap in agent.capabilities if cap.enabled and cap.name.lower() in task_type
            )
            if agent.status is AgentStatus.IDLE:
                value += 1.0
            return value

        # max() keeps the first of equally scored agents, i.e. registration order.
        return max(candidates, key=score)

    def _resolve_task_agent(self, task: Task) -> Optional[Agent]:
        if task.agent_id is not None:
            return self._agents.get(task.agent_id)
        return self._find_best_agent(task.type)

    def _resolve_step_agent(self, step: WorkflowStep) -> Agent:
        if step.agent_id:
            agent = self._agents.get(step.agent_id)
            if agent is None:
                raise NotFoundError("agent", step.agent_id)
            return agent
        agent = self._find_agent_by_type(step.agent_type or "")
        if agent is None:
            raise NotFoundError("agent of type", step.agent_type or "")
        return agent

    async def _dispatch(self, agent: Agent, task: Task, deadline: Deadline) -> Any:
        task.start(agent.agent_id)
        self._events.publish("task.updated", task.id, status=task.status.value, agent_id=agent.agent_id)
        logger.info("task_dispatched", task_id=task.id, agent_id=agent.agent_id, task_type=task.type)
        try:
            result = await agent.run_task(task, deadline)
        except OrchestratorError as exc:
            task.fail(exc.public_message)
            self._events.publish("task.updated", task.id, status=task.status.value)
            raise
        except Exception as exc:
            logger.exception("task_crashed", task_id=task.id, agent_id=agent.agent_id)
            task.fail("Internal error")
            self._events.publish("task.updated", task.id, status=task.status.value)
            raise InternalError(f"Agent {agent.agent_id} crashed: {exc}") from exc
        task.complete(result)
        self._events.publish("task.updated", task.id, status=task.status.value)
        return result

    # Workflows

    def create_workflow(
        self,
        name: str,
        steps: Iterable[WorkflowStep],
        *,
        description: str = "",
        triggers: Iterable[WorkflowTrigger] = (),
        priority: TaskPriority = TaskPriority.MEDIUM,
        timeout_seconds: Optional[float] = None,
    ) -> Result[Workflow]:
        if not name:
            return Err(ValidationError("Workflow name is required"))
        steps = list(steps)
        try:
            validate_steps(steps)
        except ValidationError as exc:
            return Err(exc)
        workflow = Workflow(
            name=name,
            steps=steps,
            triggers=list(triggers),
            description=description,
            priority=priority,
            timeout_seconds=timeout_seconds,
        )
        self._workflows[workflow.id] = workflow
        logger.info("workflow_created", workflow_id=workflow.id, steps=len(steps))
        return Ok(workflow)

    def update_workflow(self, workflow_id: str, patch: Mapping[str, Any]) -> Result[Workflow]:
        """Apply ``patch`` to a workflow; an unknown id leaves everything unchanged."""
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            return Err(NotFoundError("workflow", workflow_id))
        unknown = set(patch) - _WORKFLOW_FIELDS
        if unknown:
            return Err(ValidationError(f"Cannot update workflow fields: {', '.join(sorted(unknown))}"))
        if "name" in patch and not patch["name"]:
            return Err(ValidationError("Workflow name is required"))
        if "priority" in patch and not isinstance(patch["priority"], TaskPriority):
            return Err(ValidationError(f"Invalid workflow priority {patch['priority']!r}"))
        if "description" in patch and not isinstance(patch["description"], str):
            return Err(ValidationError("Workflow description must be a string"))
        for field_name in ("steps", "triggers"):
            if field_name in patch and not isinstance(patch[field_name], list):
                return Err(ValidationError(f"Workflow {field_name} must be a list"))
        if "steps" in patch:
            try:
                validate_steps(patch["steps"])
            except ValidationError as exc:
                return Err(exc)
        updated = replace(workflow, **dict(patch), updated_at=utcnow())
        self._workflows[workflow_id] = updated
        return Ok(updated)

    def delete_workflow(self, workflow_id: str) -> Result[Workflow]:
        workflow = self._workflows.pop(workflow_id, None)
        if workflow is None:
            return Err(NotFoundError("workflow", workflow_id))
        return Ok(workflow)

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self._workflows.get(workflow_id)

    def list_workflows(self) -> List[Workflow]:
        return list(self._workflows.values())

    async def execute_workflow(
        self,
        workflow_id: str,
        context: Optional[Dict[str, Any]] = None,
        triggered_by: str = "manual",
        deadline: Optional[Deadline] = None,
    ) -> Result[Execution]:
        """Run every step of a workflow in order, halting at the first failure."""
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            return Err(NotFoundError("workflow", workflow_id))

        execution = Execution(
            workflow_id=workflow_id,
            triggered_by=triggered_by,
            context=dict(context or {}),
        )
        self._executions[execution.id] = execution
        run_deadline = (deadline or Deadline()).child(workflow.timeout_seconds)

        execution.status = ExecutionStatus.RUNNING
        self._events.publish("workflow.started", execution.id, workflow_id=workflow_id)
        logger.info("workflow_started", execution_id=execution.id, workflow_id=workflow_id)

        try:
            for step in validate_steps(workflow.steps):
                await self._run_step(workflow, execution, step, run_deadline)
        except OrchestratorError as exc:
            execution.finish(ExecutionStatus.FAILED, exc.public_message)
            self._events.publish("workflow.failed", execution.id, error=execution.error)
            logger.warning(
                "workflow_failed",
                execution_id=execution.id,
                step=execution.current_step,
                error=exc.message,
            )
        else:
            execution.finish(ExecutionStatus.COMPLETED)
            self._events.publish("workflow.completed", execution.id, workflow_id=workflow_id)
            logger.info("workflow_completed", execution_id=execution.id, duration_ms=execution.duration_ms)
        return Ok(execution)

    async def _run_step(
        self,
        workflow: Workflow,
        execution: Execution,
        step: WorkflowStep,
        deadline: Deadline,
    ) -> None:
        step_execution = StepExecution(step_id=step.id)
        execution.step_executions.append(step_execution)
        execution.current_step = step.id

        if step.condition is not None and not step.condition.evaluate(execution.context):
            step_execution.finish(StepStatus.SKIPPED)
            return

        try:
            agent = self._resolve_step_agent(step)
        except NotFoundError as exc:
            step_execution.finish(StepStatus.FAILED, error=exc.message)
            raise

        task = Task(
            type="workflow_step",
            priority=workflow.priority,
            input={
                "action": step.action,
                "description": f"Workflow step: {step.name}",
                **step.parameters,
                "context": dict(execution.context),
            },
        )
        self._queue.track(task)
        step_execution.agent_id = agent.agent_id
        step_execution.task_id = task.id
        step_execution.status = StepStatus.RUNNING

        try:
            result = await self._dispatch(agent, task, deadline.child(step.timeout_seconds or self._dispatch_timeout))
        except OrchestratorError as exc:
            step_execution.finish(StepStatus.FAILED, error=exc.public_message)
            raise
        step_execution.finish(StepStatus.COMPLETED, result=result)
        execution.context[f"step_{step.id}_result"] = result

    async def trigger_event(self, event_type: str, context: Optional[Dict[str, Any]] = None) -> List[Execution]:
        """Run every workflow with an enabled trigger for ``event_type``."""
        executions = []
        for workflow in list(self._workflows.values()):
            if workflow.listens_to(event_type):
                result = await self.execute_workflow(workflow.id, context, triggered_by=f"event:{event_type}")
                executions.append(result.unwrap())
        return executions

    def get_execution(self, execution_id: str) -> Optional[Execution]:
        return self._executions.get(execution_id)

    def list_executions(self) -> List[Execution]:
        return list(self._executions.values())

    # Handoffs and collaborations

    def request_handoff(
        self,
        from_agent: str,
        to_agent: str,
        task_id: str,
        context: Optional[Dict[str, Any]] = None,
        reason: str = "",
    ) -> Result[Handoff]:
        """Move ownership of a task; ``from_agent`` must currently own it."""
        task = self._queue.get(task_id)
        if task is None:
            return Err(NotFoundError("task", task_id))
        if to_agent not in self._agents:
            return Err(NotFoundError("agent", to_agent))
        if task.agent_id != from_agent:
            return Err(ValidationError(f"Agent {from_agent} does not own task {task_id}"))

        handoff = Handoff(
            from_agent=from_agent,
            to_agent=to_agent,
            task_id=task_id,
            reason=reason,
            context=dict(context or {}),
        )
        self._handoffs[handoff.id] = handoff
        task.agent_id = to_agent
        task.updated_at = utcnow()
        handoff.status = HandoffStatus.COMPLETED
        self._events.publish("handoff.completed", handoff.id, task_id=task_id, to_agent=to_agent)
        logger.info(
            "handoff_completed",
            handoff_id=handoff.id,
            task_id=task_id,
            from_agent=from_agent,
            to_agent=to_agent,
        )
        return Ok(handoff)

    async def request_collaboration(
        self,
        requesting_agent: str,
        target_agent: str,
        collaboration_type: CollaborationType,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        deadline: Optional[Deadline] = None,
    ) -> Result[Collaboration]:
        """Ask ``target_agent`` for help without transferring any task."""
        if requesting_agent not in self._agents:
            return Err(NotFoundError("agent", requesting_agent))
        target = self._agents.get(target_agent)
        if target is None:
            return Err(NotFoundError("agent", target_agent))

        collaboration = Collaboration(
            requesting_agent=requesting_agent,
            target_agent=target_agent,
            type=collaboration_type,
            description=description,
            context=dict(context or {}),
        )
        self._collaborations[collaboration.id] = collaboration
        collaboration.status = CollaborationStatus.IN_PROGRESS
        self._events.publish("collaboration.updated", collaboration.id, status=collaboration.status.value)

        task = Task(
            type="collaboration",
            input={
                "action": "collaboration_task",
                "description": f"Collaboration request: {description}",
                "collaboration_type": collaboration_type.value,
                "requesting_agent": requesting_agent,
                "context": collaboration.context,
            },
        )
        self._queue.track(task)
        dispatch_deadline = (deadline or Deadline()).child(self._dispatch_timeout)
        try:
            collaboration.response = await self._dispatch(target, task, dispatch_deadline)
        except OrchestratorError as exc:
            collaboration.status = CollaborationStatus.REJECTED
            collaboration.error = exc.public_message
        else:
            collaboration.status = CollaborationStatus.COMPLETED
        self._events.publish("collaboration.updated", collaboration.id, status=collaboration.status.value)
        return Ok(collaboration)

    def list_handoffs(self) -> List[Handoff]:
        return list(self._handoffs.values())

    def list_collaborations(self) -> List[Collaboration]:
        return list(self._collaborations.values())

    # Metrics

    def get_metrics(self) -> OrchestrationMetrics:
        executions = list(self._executions.values())
        completed = [e for e in executions if e.status is ExecutionStatus.COMPLETED]
        failed = [e for e in executions if e.status is ExecutionStatus.FAILED]
        durations = [e.duration_ms for e in completed if e.duration_ms is not None]

        utilization = {
            agent_id: sum(
                1 for e in executions if any(se.agent_id == agent_id for se in e.step_executions)
            )
            for agent_id in self._agents
        }
        bottlenecks = [
            f"High utilization on agent: {agent_id}"
            for agent_id, count in utilization.items()
            if count > _BUSY_AGENT_THRESHOLD
        ]
        slow = sum(1 for duration in durations if duration > _SLOW_EXECUTION_MS)
        if slow:
            bottlenecks.append(f"{slow} slow workflow executions detected")

        return OrchestrationMetrics(
            queued_tasks=self._queue.count(TaskStatus.QUEUED),
            processing_tasks=self._queue.count(TaskStatus.PROCESSING),
            completed_tasks=self._queue.count(TaskStatus.COMPLETED),
            failed_tasks=self._queue.count(TaskStatus.FAILED),
            agent_count=len(self._agents),
            uptime_seconds=time.monotonic() - self._started_at if self._started_at else 0.0,
            is_running=self._running,
            total_workflows=len(self._workflows),
            active_executions=sum(1 for e in executions if e.status is ExecutionStatus.RUNNING),
            completed_executions=len(completed),
            failed_executions=len(failed),
            average_execution_time_ms=sum(durations) / len(durations) if durations else 0.0,
            success_rate=len(completed) / len(executions) if executions else 0.0,
            handoff_count=len(self._handoffs),
            collaboration_count=len(self._collaborations),
            agent_utilization=utilization,
            bottlenecks=bottlenecks,
        )
