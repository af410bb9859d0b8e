"""Tests for workflow execution, routing, handoffs and metrics."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import pytest

from crm_agents.agents.base import Agent
from crm_agents.agents.echo import EchoAgent
from crm_agents.core.cancellation import Deadline
from crm_agents.core.errors import NotFoundError, UpstreamError, ValidationError
from crm_agents.core.models import (
    AgentConfig,
    AgentDescriptor,
    AgentStatus,
    CollaborationStatus,
    CollaborationType,
    HandoffStatus,
    Task,
    TaskPriority,
    TaskStatus,
)
from crm_agents.orchestration.defaults import install_default_workflows
from crm_agents.orchestration.orchestrator import Orchestrator
from crm_agents.orchestration.workflows import (
    Execution,
    ExecutionStatus,
    StepCondition,
    StepStatus,
    WorkflowStep,
    WorkflowTrigger,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class ScriptedAgent(Agent):
    """Returns canned results per action and fails on request."""

    def __init__(self, descriptor: AgentDescriptor, results: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(descriptor)
        self.results = results or {}
        self.handled = []

    async def handle_task(self, task: Task, deadline: Deadline) -> Any:
        action = task.input.get("action", task.type)
        self.handled.append(action)
        if action == "explode":
            raise UpstreamError("provider said no")
        if action == "crash":
            raise RuntimeError("boom")
        if action == "hang":
            await asyncio.sleep(5)
        return self.results.get(action, {"done": action})


def descriptor(agent_id: str, agent_type: str = "general") -> AgentDescriptor:
    return AgentDescriptor(agent_id=agent_id, name=agent_id.title(), type=agent_type)


def echo_agent(agent_id: str, agent_type: str = "general") -> EchoAgent:
    return EchoAgent(descriptor(agent_id, agent_type))


@pytest.fixture
def orchestrator() -> Orchestrator:
    return Orchestrator(agent_catalog={"echo": EchoAgent}, dispatch_timeout=2, poll_interval=0.01)


@pytest.mark.anyio
async def test_execute_workflow_records_step_results(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("email-agent", "email"))
    workflow = orchestrator.create_workflow(
        "Welcome",
        [WorkflowStep(id="s1", name="Send", action="send_welcome_email", agent_type="email")],
    ).unwrap()

    async with orchestrator.events.subscribe("test") as inbox:
        result = await orchestrator.execute_workflow(workflow.id, {"customer": "c-1"})
        statuses = []
        while not inbox.empty():
            statuses.append(inbox.get_nowait().type)

    execution = result.unwrap()
    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.completed_at is not None
    assert execution.context["customer"] == "c-1"
    assert execution.context["step_s1_result"]["echo"] == "Email-Agent handled send_welcome_email"
    assert [step.status for step in execution.step_executions] == [StepStatus.COMPLETED]
    assert orchestrator.get_execution(execution.id) is execution
    assert statuses[0] == "workflow.started"
    assert statuses[-1] == "workflow.completed"

    step_task = orchestrator.get_task(execution.step_executions[0].task_id)
    assert step_task.type == "workflow_step"
    assert step_task.status is TaskStatus.COMPLETED
    assert step_task.agent_id == "email-agent"


@pytest.mark.anyio
async def test_execute_unknown_workflow(orchestrator: Orchestrator) -> None:
    result = await orchestrator.execute_workflow("workflow-missing")

    assert not result
    assert isinstance(result.error, NotFoundError)
    assert orchestrator.list_executions() == []


@pytest.mark.anyio
async def test_failing_step_halts_workflow(orchestrator: Orchestrator) -> None:
    agent = ScriptedAgent(descriptor("sales-agent", "sales"))
    orchestrator.register_agent(agent)
    workflow = orchestrator.create_workflow(
        "Fragile",
        [
            WorkflowStep(id="first", name="First", action="explode", agent_type="sales"),
            WorkflowStep(id="second", name="Second", action="never", agent_type="sales", dependencies=["first"]),
        ],
    ).unwrap()

    execution = (await orchestrator.execute_workflow(workflow.id)).unwrap()

    assert execution.status is ExecutionStatus.FAILED
    assert execution.error == "AI provider request failed"
    assert execution.current_step == "first"
    assert agent.handled == ["explode"]
    assert [step.step_id for step in execution.step_executions] == ["first"]
    assert agent.descriptor.metrics.tasks_failed == 1
    assert agent.status is AgentStatus.IDLE


@pytest.mark.anyio
async def test_crashing_agent_reports_internal_error(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(ScriptedAgent(descriptor("general-agent")))
    workflow = orchestrator.create_workflow(
        "Crash", [WorkflowStep(id="s1", name="Crash", action="crash", agent_type="general")]
    ).unwrap()

    execution = (await orchestrator.execute_workflow(workflow.id)).unwrap()

    assert execution.status is ExecutionStatus.FAILED
    assert execution.error == "Internal error"


@pytest.mark.anyio
async def test_missing_agent_fails_execution(orchestrator: Orchestrator) -> None:
    workflow = orchestrator.create_workflow(
        "Orphan", [WorkflowStep(id="s1", name="Orphan", action="x", agent_type="nobody")]
    ).unwrap()

    execution = (await orchestrator.execute_workflow(workflow.id)).unwrap()

    assert execution.status is ExecutionStatus.FAILED
    assert "not found" in execution.error


@pytest.mark.anyio
async def test_step_timeout_fails_execution(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(ScriptedAgent(descriptor("slow-agent")))
    workflow = orchestrator.create_workflow(
        "Slow",
        [WorkflowStep(id="s1", name="Hang", action="hang", agent_type="general", timeout_seconds=0.05)],
    ).unwrap()

    execution = (await orchestrator.execute_workflow(workflow.id)).unwrap()

    assert execution.status is ExecutionStatus.FAILED
    assert execution.step_executions[0].status is StepStatus.FAILED


@pytest.mark.anyio
async def test_cancelled_deadline_stops_dispatch(orchestrator: Orchestrator) -> None:
    agent = ScriptedAgent(descriptor("general-agent"))
    orchestrator.register_agent(agent)
    workflow = orchestrator.create_workflow(
        "Cancelled", [WorkflowStep(id="s1", name="Step", action="x", agent_type="general")]
    ).unwrap()
    deadline = Deadline()
    deadline.cancel("client went away")

    execution = (await orchestrator.execute_workflow(workflow.id, deadline=deadline)).unwrap()

    assert execution.status is ExecutionStatus.FAILED
    assert agent.handled == []


@pytest.mark.anyio
async def test_conditions_skip_steps(orchestrator: Orchestrator) -> None:
    sales = ScriptedAgent(
        descriptor("sales-agent", "sales"),
        results={"lead_qualification": {"qualified": True, "score": 40}},
    )
    orchestrator.register_agent(sales)
    orchestrator.register_agent(echo_agent("email-agent", "email"))
    for agent_type in ("customer", "product", "general"):
        orchestrator.register_agent(echo_agent(f"{agent_type}-agent", agent_type))
    workflows = {workflow.name: workflow for workflow in install_default_workflows(orchestrator)}

    execution = (await orchestrator.execute_workflow(workflows["Lead Processing"].id)).unwrap()

    statuses = {step.step_id: step.status for step in execution.step_executions}
    assert execution.status is ExecutionStatus.COMPLETED
    assert statuses == {
        "lead_qualification": StepStatus.COMPLETED,
        "send_followup": StepStatus.COMPLETED,
        "create_opportunity": StepStatus.SKIPPED,
    }
    assert "step_create_opportunity_result" not in execution.context


@pytest.mark.anyio
async def test_trigger_event_runs_listening_workflows(orchestrator: Orchestrator) -> None:
    for agent_type in ("email", "customer", "product"):
        orchestrator.register_agent(echo_agent(f"{agent_type}-agent", agent_type))
    install_default_workflows(orchestrator)

    executions = await orchestrator.trigger_event("customer_signup", {"customer_id": "c-9"})

    assert len(executions) == 1
    assert executions[0].triggered_by == "event:customer_signup"
    assert executions[0].status is ExecutionStatus.COMPLETED
    assert await orchestrator.trigger_event("nothing_listens") == []


def test_create_workflow_rejects_bad_steps(orchestrator: Orchestrator) -> None:
    cyclic = [
        WorkflowStep(id="a", name="A", action="x", agent_type="general", dependencies=["b"]),
        WorkflowStep(id="b", name="B", action="x", agent_type="general", dependencies=["a"]),
    ]
    unbound = [WorkflowStep(id="a", name="A", action="x")]

    for steps in (cyclic, unbound):
        result = orchestrator.create_workflow("Broken", steps)
        assert not result
        assert isinstance(result.error, ValidationError)
    assert orchestrator.list_workflows() == []


def test_update_and_delete_unknown_workflow_leave_state_unchanged(orchestrator: Orchestrator) -> None:
    workflow = orchestrator.create_workflow(
        "Keep", [WorkflowStep(id="s1", name="S", action="x", agent_type="general")]
    ).unwrap()

    assert not orchestrator.update_workflow("workflow-missing", {"name": "Other"})
    assert not orchestrator.delete_workflow("workflow-missing")
    assert orchestrator.list_workflows() == [workflow]
    assert workflow.name == "Keep"


def test_update_workflow_replaces_fields(orchestrator: Orchestrator) -> None:
    workflow = orchestrator.create_workflow(
        "Before", [WorkflowStep(id="s1", name="S", action="x", agent_type="general")]
    ).unwrap()

    updated = orchestrator.update_workflow(
        workflow.id,
        {"name": "After", "triggers": [WorkflowTrigger(type="event", event_type="lead_created")]},
    ).unwrap()

    assert updated.id == workflow.id
    assert updated.name == "After"
    assert updated.listens_to("lead_created")
    assert orchestrator.get_workflow(workflow.id) is updated
    assert not orchestrator.update_workflow(workflow.id, {"owner": "someone"})


def test_delete_workflow(orchestrator: Orchestrator) -> None:
    workflow = orchestrator.create_workflow(
        "Gone", [WorkflowStep(id="s1", name="S", action="x", agent_type="general")]
    ).unwrap()

    assert orchestrator.delete_workflow(workflow.id)
    assert orchestrator.get_workflow(workflow.id) is None


@pytest.mark.anyio
async def test_handoff_moves_ownership_once(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("a1"))
    orchestrator.register_agent(echo_agent("a2"))
    task = orchestrator.enqueue_task("lead_followup", {"lead": "l-1"}, agent_id="a1").unwrap()
    await orchestrator.process_next()

    handoff = orchestrator.request_handoff("a1", "a2", task.id, reason="specialist").unwrap()

    assert handoff.status is HandoffStatus.COMPLETED
    assert orchestrator.get_task(task.id).agent_id == "a2"

    stale = orchestrator.request_handoff("a1", "a2", task.id)
    assert not stale
    assert isinstance(stale.error, ValidationError)
    assert len(orchestrator.list_handoffs()) == 1


def test_handoff_to_unknown_targets(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("a1"))
    task = orchestrator.enqueue_task("x", agent_id="a1").unwrap()

    assert isinstance(orchestrator.request_handoff("a1", "ghost", task.id).error, NotFoundError)
    assert isinstance(orchestrator.request_handoff("a1", "a1", "task-missing").error, NotFoundError)


@pytest.mark.anyio
async def test_collaboration_completes_with_response(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("sales-agent", "sales"))
    orchestrator.register_agent(echo_agent("product-agent", "product"))

    collaboration = (
        await orchestrator.request_collaboration(
            "sales-agent", "product-agent", CollaborationType.CONSULTATION, "pricing tiers"
        )
    ).unwrap()

    assert collaboration.status is CollaborationStatus.COMPLETED
    assert collaboration.response["agent_id"] == "product-agent"
    tracked = [task for task in orchestrator.list_tasks() if task.type == "collaboration"]
    assert len(tracked) == 1 and tracked[0].status is TaskStatus.COMPLETED


@pytest.mark.anyio
async def test_collaboration_rejected_when_target_fails(orchestrator: Orchestrator) -> None:
    class Refusing(ScriptedAgent):
        async def handle_task(self, task: Task, deadline: Deadline) -> Any:
            raise UpstreamError("rate limited")

    orchestrator.register_agent(echo_agent("sales-agent", "sales"))
    orchestrator.register_agent(Refusing(descriptor("product-agent", "product")))

    collaboration = (
        await orchestrator.request_collaboration(
            "sales-agent", "product-agent", CollaborationType.DATA_REQUEST, "stock levels"
        )
    ).unwrap()

    assert collaboration.status is CollaborationStatus.REJECTED
    assert collaboration.error == "AI provider request failed"


@pytest.mark.anyio
async def test_collaboration_with_unknown_agent(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("sales-agent", "sales"))

    result = await orchestrator.request_collaboration(
        "sales-agent", "ghost", CollaborationType.APPROVAL, "discount"
    )

    assert isinstance(result.error, NotFoundError)
    assert orchestrator.list_collaborations() == []


def test_metrics_snapshot(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("a1"))
    orchestrator.register_agent(echo_agent("a2"))
    orchestrator.enqueue_task("email_response", {"to": "x@example.com"})

    metrics = orchestrator.get_metrics()

    assert metrics.agent_count == 2
    assert metrics.queued_tasks == 1
    assert metrics.processing_tasks == 0
    assert metrics.is_running is False
    assert metrics.uptime_seconds == 0.0
    assert metrics.success_rate == 0.0
    assert metrics.bottlenecks == []


@pytest.mark.anyio
async def test_process_next_routes_by_priority(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("general-agent"))
    low = orchestrator.enqueue_task("digest", priority=TaskPriority.LOW).unwrap()
    urgent = orchestrator.enqueue_task("escalation", priority=TaskPriority.URGENT).unwrap()

    assert await orchestrator.process_next()
    assert urgent.status is TaskStatus.COMPLETED
    assert low.status is TaskStatus.QUEUED
    assert await orchestrator.process_next()
    assert not await orchestrator.process_next()


@pytest.mark.anyio
async def test_unroutable_task_fails(orchestrator: Orchestrator) -> None:
    task = orchestrator.enqueue_task("anything").unwrap()

    await orchestrator.process_next()

    assert task.status is TaskStatus.FAILED
    assert task.error == "No suitable agent found"


@pytest.mark.anyio
async def test_best_agent_prefers_matching_type(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("general-agent"))
    orchestrator.register_agent(echo_agent("email-agent", "email"))
    task = orchestrator.enqueue_task("email_response").unwrap()

    await orchestrator.process_next()

    assert task.agent_id == "email-agent"


def test_enqueue_for_unknown_agent(orchestrator: Orchestrator) -> None:
    result = orchestrator.enqueue_task("x", agent_id="ghost")

    assert isinstance(result.error, NotFoundError)
    assert orchestrator.list_tasks() == []


def test_register_agent_config(orchestrator: Orchestrator) -> None:
    agent = orchestrator.register_agent_config(AgentConfig(name="Helper", type="general", agent_id="h1")).unwrap()

    assert orchestrator.get_agent("h1") is agent
    assert not orchestrator.register_agent_config(AgentConfig(name="X", type="general", kind="robot"))


def test_register_agent_overwrites(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("a1"))
    replacement = echo_agent("a1", "email")
    orchestrator.register_agent(replacement)

    assert orchestrator.list_agents() == [replacement]


@pytest.mark.anyio
async def test_start_drains_queue_and_stop_is_idempotent(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("general-agent"))
    await orchestrator.start()
    await orchestrator.start()
    task = orchestrator.enqueue_task("ping").unwrap()

    for _ in range(100):
        if task.status is TaskStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)

    assert task.status is TaskStatus.COMPLETED
    assert orchestrator.get_metrics().is_running is True
    await orchestrator.stop()
    await orchestrator.stop()
    assert orchestrator.is_running is False


def test_step_condition_operators() -> None:
    context = {"step_a_result": {"score": 80, "tags": ["vip"], "qualified": True}}

    assert StepCondition("step_a_result.score", ">=", 70).evaluate(context)
    assert not StepCondition("step_a_result.score", "<", 70).evaluate(context)
    assert StepCondition("step_a_result.qualified", "==", True).evaluate(context)
    assert StepCondition("step_a_result.tags").evaluate(context)
    assert not StepCondition("step_b_result.score", ">", 1).evaluate(context)
    assert not StepCondition("step_a_result.tags", ">", 1).evaluate(context)
    with pytest.raises(ValidationError):
        StepCondition("x", "~=", 1)


def test_cancel_task(orchestrator: Orchestrator) -> None:
    task = orchestrator.enqueue_task("digest").unwrap()

    assert orchestrator.cancel_task(task.id)
    assert task.status is TaskStatus.FAILED
    assert isinstance(orchestrator.cancel_task(task.id).error, ValidationError)
    assert isinstance(orchestrator.cancel_task("task-missing").error, NotFoundError)


@pytest.mark.anyio
async def test_offline_agents_are_not_routed(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(echo_agent("email-agent", "email"))
    orchestrator.register_agent(echo_agent("general-agent"))
    assert orchestrator.set_agent_status("email-agent", AgentStatus.OFFLINE)
    task = orchestrator.enqueue_task("email_response").unwrap()

    await orchestrator.process_next()

    assert task.agent_id == "general-agent"
    assert not orchestrator.set_agent_status("ghost", AgentStatus.IDLE)


def test_unregister_agent(orchestrator: Orchestrator) -> None:
    agent = echo_agent("a1")
    orchestrator.register_agent(agent)

    assert orchestrator.unregister_agent("a1")
    assert agent.status is AgentStatus.OFFLINE
    assert orchestrator.get_agent("a1") is None
    assert not orchestrator.unregister_agent("a1")


def test_update_workflow_rejects_null_values(orchestrator: Orchestrator) -> None:
    workflow = orchestrator.create_workflow(
        "Steady",
        [WorkflowStep(id="s1", name="S", action="x", agent_type="general")],
        priority=TaskPriority.HIGH,
    ).unwrap()

    for patch in ({"priority": None}, {"priority": "urgent"}, {"steps": None}, {"description": None}):
        result = orchestrator.update_workflow(workflow.id, patch)
        assert not result
        assert isinstance(result.error, ValidationError)

    assert orchestrator.get_workflow(workflow.id) is workflow
    assert workflow.priority is TaskPriority.HIGH
    assert len(workflow.steps) == 1


def test_execution_finish_requires_terminal_status() -> None:
    execution = Execution(workflow_id="workflow-1")

    with pytest.raises(ValueError):
        execution.finish(ExecutionStatus.RUNNING)
    with pytest.raises(ValueError):
        execution.finish(ExecutionStatus.PENDING)
    assert execution.completed_at is None


def test_execution_finishes_only_once() -> None:
    execution = Execution(workflow_id="workflow-1")
    execution.finish(ExecutionStatus.COMPLETED)
    completed_at = execution.completed_at

    with pytest.raises(RuntimeError):
        execution.finish(ExecutionStatus.FAILED, "late failure")

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.error is None
    assert execution.completed_at == completed_at


class GatedAgent(Agent):
    """Holds each task until its gate is opened."""

    def __init__(self, descriptor: AgentDescriptor) -> None:
        super().__init__(descriptor)
        self.gates: Dict[str, asyncio.Event] = {}

    async def handle_task(self, task: Task, deadline: Deadline) -> Any:
        await self.gates.setdefault(task.id, asyncio.Event()).wait()
        return {"done": task.id}


@pytest.mark.anyio
async def test_agent_stays_busy_while_dispatches_overlap() -> None:
    agent = GatedAgent(descriptor("gated-agent"))
    first, second = Task(type="a", id="t1"), Task(type="b", id="t2")
    for task in (first, second):
        agent.gates[task.id] = asyncio.Event()

    runs = [asyncio.create_task(agent.run_task(task, Deadline(2))) for task in (first, second)]
    await asyncio.sleep(0)
    assert agent.status is AgentStatus.BUSY

    agent.gates["t1"].set()
    assert await runs[0] == {"done": "t1"}
    assert agent.status is AgentStatus.BUSY

    agent.gates["t2"].set()
    assert await runs[1] == {"done": "t2"}
    assert agent.status is AgentStatus.IDLE
    assert agent.descriptor.metrics.tasks_completed == 2


@pytest.mark.anyio
async def test_metrics_success_rate_is_a_fraction(orchestrator: Orchestrator) -> None:
    orchestrator.register_agent(ScriptedAgent(descriptor("sales-agent", "sales")))
    fine = orchestrator.create_workflow(
        "Fine", [WorkflowStep(id="s1", name="S", action="qualify", agent_type="sales")]
    ).unwrap()
    broken = orchestrator.create_workflow(
        "Broken", [WorkflowStep(id="s1", name="S", action="explode", agent_type="sales")]
    ).unwrap()

    await orchestrator.execute_workflow(fine.id)
    assert orchestrator.get_metrics().success_rate == 1.0

    await orchestrator.execute_workflow(broken.id)
    metrics = orchestrator.get_metrics()
    assert metrics.success_rate == 0.5
    assert 0.0 <= orchestrator.get_agent("sales-agent").descriptor.metrics.success_rate <= 1.0
