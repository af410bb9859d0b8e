"""HTTP API exposing orchestrator capabilities behind an ``action`` discriminator."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from crm_agents.api.schemas import (
    CancelTaskRequest,
    CollaborationRequest,
    CreateWorkflowRequest,
    EnqueueTaskRequest,
    ExecuteWorkflowRequest,
    HandoffRequest,
    RegisterAgentRequest,
    TriggerEventRequest,
    UpdateWorkflowRequest,
)
from crm_agents.core.cancellation import Deadline
from crm_agents.core.errors import NotFoundError, ValidationError
from crm_agents.orchestration.orchestrator import Orchestrator
from crm_agents.orchestration.workflows import Execution, ExecutionStatus
from crm_agents.runtime import Services

router = APIRouter(prefix="/orchestrator", tags=["orchestrator"])

Payload = Dict[str, Any]
PostHandler = Callable[[Services, Payload], Awaitable[JSONResponse]]


def envelope(
    data: Any = None,
    *,
    success: bool = True,
    error: Optional[str] = None,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    content: Dict[str, Any] = {"success": success}
    if data is not None:
        content["data"] = jsonable_encoder(data)
    if error is not None:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_orchestrator(services: Services = Depends(get_services)) -> Orchestrator:
    return services.orchestrator


def _execution_response(execution: Execution) -> JSONResponse:
    if execution.status is ExecutionStatus.FAILED:
        return envelope(execution, success=False, error=execution.error)
    return envelope(execution)


@router.get("")
async def read_orchestrator(
    action: Optional[str] = Query(None),
    execution_id: Optional[str] = Query(None, alias="executionId"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    if action == "metrics":
        return envelope(orchestrator.get_metrics())
    if action == "workflows":
        return envelope(orchestrator.list_workflows())
    if action == "executions":
        if execution_id:
            execution = orchestrator.get_execution(execution_id)
            if execution is None:
                raise NotFoundError("execution", execution_id)
            return envelope(execution)
        return envelope(orchestrator.list_executions())
    if action == "handoffs":
        return envelope(orchestrator.list_handoffs())
    if action == "collaborations":
        return envelope(orchestrator.list_collaborations())
    if action == "agents":
        return envelope([agent.descriptor for agent in orchestrator.list_agents()])
    if action == "tasks":
        return envelope(orchestrator.list_tasks())
    if action in (None, "status"):
        return envelope({"is_running": orchestrator.is_running, "agent_count": len(orchestrator.list_agents())})
    raise ValidationError(f"Unknown action '{action}'")


async def _start(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    await orchestrator.start()
    return envelope({"is_running": orchestrator.is_running})


async def _stop(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    await orchestrator.stop()
    return envelope({"is_running": orchestrator.is_running})


async def _execute_workflow(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = ExecuteWorkflowRequest.model_validate(payload)
    execution = (
        await orchestrator.execute_workflow(
            request.workflow_id,
            request.context,
            request.triggered_by,
            deadline=Deadline(request.timeout_seconds),
        )
    ).unwrap()
    return _execution_response(execution)


async def _test_workflow(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = ExecuteWorkflowRequest.model_validate(payload)
    execution = (
        await orchestrator.execute_workflow(
            request.workflow_id,
            {**request.context, "test": True},
            "test",
            deadline=Deadline(request.timeout_seconds),
        )
    ).unwrap()
    return _execution_response(execution)


async def _create_workflow(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = CreateWorkflowRequest.model_validate(payload.get("workflow", payload))
    workflow = orchestrator.create_workflow(**request.workflow_kwargs()).unwrap()
    return envelope(workflow)


async def _request_handoff(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = HandoffRequest.model_validate(payload)
    handoff = orchestrator.request_handoff(
        request.from_agent,
        request.to_agent,
        request.task_id,
        request.context,
        request.reason,
    ).unwrap()
    return envelope(handoff)


async def _request_collaboration(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = CollaborationRequest.model_validate(payload)
    collaboration = (
        await orchestrator.request_collaboration(
            request.requesting_agent,
            request.target_agent,
            request.type,
            request.description,
            request.context,
            deadline=Deadline(request.timeout_seconds),
        )
    ).unwrap()
    return envelope(collaboration)


async def _register_agent(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = RegisterAgentRequest.model_validate(payload)
    agent = orchestrator.register_agent_config(request.agent.to_config(services.default_agent_kind)).unwrap()
    return envelope(agent.descriptor)


async def _enqueue_task(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = EnqueueTaskRequest.model_validate(payload.get("task", payload))
    task = orchestrator.enqueue_task(request.type, request.input, request.priority, request.agent_id).unwrap()
    return envelope(task)


async def _cancel_task(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = CancelTaskRequest.model_validate(payload)
    task = orchestrator.cancel_task(request.task_id).unwrap()
    return envelope(task)


async def _trigger_event(services: Services, payload: Payload) -> JSONResponse:
    orchestrator = services.orchestrator
    request = TriggerEventRequest.model_validate(payload)
    executions = await orchestrator.trigger_event(request.event_type, request.context)
    return envelope(executions)


_POST_ACTIONS: Dict[str, PostHandler] = {
    "start": _start,
    "stop": _stop,
    "execute_workflow": _execute_workflow,
    "test_workflow": _test_workflow,
    "create_workflow": _create_workflow,
    "request_handoff": _request_handoff,
    "request_collaboration": _request_collaboration,
    "register_agent": _register_agent,
    "enqueue_task": _enqueue_task,
    "cancel_task": _cancel_task,
    "trigger_event": _trigger_event,
}


@router.post("")
async def post_orchestrator(
    payload: Optional[Payload] = Body(None),
    action: Optional[str] = Query(None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    payload = payload or {}
    action = payload.get("action") or action
    if not action:
        raise ValidationError("Action is required")
    handler = _POST_ACTIONS.get(action)
    if handler is None:
        raise ValidationError(f"Unknown action '{action}'")
    return await handler(services, payload)


@router.put("")
async def put_orchestrator(
    payload: Optional[Payload] = Body(None),
    action: Optional[str] = Query(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    payload = payload or {}
    action = payload.get("action") or action or "update_workflow"
    if action != "update_workflow":
        raise ValidationError(f"Unknown action '{action}'")
    request = UpdateWorkflowRequest.model_validate(payload)
    workflow = orchestrator.update_workflow(request.workflow_id, request.updates.patch()).unwrap()
    return envelope(workflow)


@router.delete("")
async def delete_orchestrator(
    workflow_id: Optional[str] = Query(None, alias="workflowId"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    if not workflow_id:
        raise ValidationError("workflowId is required")
    workflow = orchestrator.delete_workflow(workflow_id).unwrap()
    return envelope({"deleted": workflow.id})
