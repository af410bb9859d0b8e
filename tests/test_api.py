"""Tests for the action-dispatched orchestrator endpoint."""
from __future__ import annotations

from typing import Any, Dict, Iterator

import pytest
from fastapi.testclient import TestClient

from crm_agents.config import Config
from crm_agents.main import create_app


@pytest.fixture
def client() -> Iterator[TestClient]:
    app = create_app(Config(autostart=False))
    with TestClient(app) as test_client:
        yield test_client


def workflow_id(client: TestClient, name: str) -> str:
    workflows = client.get("/orchestrator", params={"action": "workflows"}).json()["data"]
    return next(workflow["id"] for workflow in workflows if workflow["name"] == name)


def post(client: TestClient, body: Dict[str, Any]):
    return client.post("/orchestrator", json=body)


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_status_and_metrics(client: TestClient) -> None:
    status = client.get("/orchestrator").json()
    metrics = client.get("/orchestrator", params={"action": "metrics"}).json()

    assert status == {"success": True, "data": {"is_running": False, "agent_count": 5}}
    assert metrics["data"]["agent_count"] == 5
    assert metrics["data"]["total_workflows"] == 3
    assert metrics["data"]["queued_tasks"] == 0


def test_unknown_actions_are_rejected(client: TestClient) -> None:
    get_response = client.get("/orchestrator", params={"action": "bogus"})
    post_response = post(client, {"action": "bogus"})
    missing = post(client, {})

    for response in (get_response, post_response, missing):
        assert response.status_code == 400
        assert response.json()["success"] is False
    assert missing.json()["error"] == "Action is required"


def test_execute_workflow(client: TestClient) -> None:
    response = post(
        client,
        {
            "action": "execute_workflow",
            "workflowId": workflow_id(client, "Customer Onboarding"),
            "context": {"customer_id": "c-1"},
        },
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"]["status"] == "completed"
    assert body["data"]["triggered_by"] == "api"
    assert "step_welcome_email_result" in body["data"]["context"]

    executions = client.get("/orchestrator", params={"action": "executions"}).json()["data"]
    assert [execution["id"] for execution in executions] == [body["data"]["id"]]
    single = client.get(
        "/orchestrator", params={"action": "executions", "executionId": body["data"]["id"]}
    ).json()
    assert single["data"]["id"] == body["data"]["id"]


def test_execute_accepts_snake_case(client: TestClient) -> None:
    response = post(
        client,
        {"action": "execute_workflow", "workflow_id": workflow_id(client, "Customer Support")},
    )

    assert response.json()["data"]["status"] == "completed"


def test_execute_unknown_workflow(client: TestClient) -> None:
    response = post(client, {"action": "execute_workflow", "workflowId": "workflow-missing"})

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Workflow workflow-missing not found"}
    assert client.get("/orchestrator", params={"action": "executions"}).json()["data"] == []


def test_unknown_execution_id(client: TestClient) -> None:
    response = client.get("/orchestrator", params={"action": "executions", "executionId": "nope"})

    assert response.status_code == 404


def test_missing_required_field(client: TestClient) -> None:
    response = post(client, {"action": "execute_workflow"})

    assert response.status_code == 400
    assert "workflowId" in response.json()["error"]


def test_test_workflow_marks_context(client: TestClient) -> None:
    response = post(
        client,
        {"action": "test_workflow", "workflowId": workflow_id(client, "Customer Onboarding")},
    )

    data = response.json()["data"]
    assert data["triggered_by"] == "test"
    assert data["context"]["test"] is True


def test_workflow_crud(client: TestClient) -> None:
    created = post(
        client,
        {
            "action": "create_workflow",
            "workflow": {
                "name": "Renewal Reminder",
                "steps": [
                    {"id": "remind", "name": "Remind", "action": "send_reminder", "agentType": "email"}
                ],
            },
        },
    ).json()["data"]

    updated = client.put(
        "/orchestrator",
        json={"workflowId": created["id"], "updates": {"name": "Renewal Nudge"}},
    )
    assert updated.json()["data"]["name"] == "Renewal Nudge"
    assert updated.json()["data"]["steps"][0]["agent_type"] == "email"

    deleted = client.delete("/orchestrator", params={"workflowId": created["id"]})
    assert deleted.json() == {"success": True, "data": {"deleted": created["id"]}}

    assert client.put("/orchestrator", json={"workflowId": created["id"], "updates": {}}).status_code == 404
    assert client.delete("/orchestrator", params={"workflowId": created["id"]}).status_code == 404
    assert client.delete("/orchestrator").status_code == 400


def test_create_workflow_validation(client: TestClient) -> None:
    response = post(
        client,
        {
            "action": "create_workflow",
            "name": "Loop",
            "steps": [
                {"id": "a", "name": "A", "action": "x", "agentType": "general", "dependencies": ["b"]},
                {"id": "b", "name": "B", "action": "x", "agentType": "general", "dependencies": ["a"]},
            ],
        },
    )

    assert response.status_code == 400
    assert "Circular dependency" in response.json()["error"]


def test_failed_execution_reports_error(client: TestClient) -> None:
    created = post(
        client,
        {
            "action": "create_workflow",
            "name": "Orphan",
            "steps": [{"id": "s1", "name": "S", "action": "x", "agentType": "nobody"}],
        },
    ).json()["data"]

    response = post(client, {"action": "execute_workflow", "workflowId": created["id"]})

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert body["data"]["status"] == "failed"
    assert body["error"] == "Agent of type nobody not found"


def test_enqueue_and_handoff(client: TestClient) -> None:
    task = post(
        client,
        {"action": "enqueue_task", "task": {"type": "email_response", "priority": "urgent", "agentId": "email-agent"}},
    ).json()["data"]
    assert task["status"] == "queued"

    handoff = post(
        client,
        {"action": "request_handoff", "fromAgent": "email-agent", "toAgent": "sales-agent", "taskId": task["id"]},
    )
    assert handoff.json()["data"]["status"] == "completed"

    stale = post(
        client,
        {"action": "request_handoff", "fromAgent": "email-agent", "toAgent": "sales-agent", "taskId": task["id"]},
    )
    assert stale.status_code == 400

    tasks = client.get("/orchestrator", params={"action": "tasks"}).json()["data"]
    assert tasks[0]["agent_id"] == "sales-agent"
    handoffs = client.get("/orchestrator", params={"action": "handoffs"}).json()["data"]
    assert len(handoffs) == 1


def test_collaboration(client: TestClient) -> None:
    response = post(
        client,
        {
            "action": "request_collaboration",
            "requestingAgent": "sales-agent",
            "targetAgent": "product-agent",
            "type": "consultation",
            "description": "Which tier fits a 40 seat team?",
        },
    )

    assert response.json()["data"]["status"] == "completed"
    collaborations = client.get("/orchestrator", params={"action": "collaborations"}).json()["data"]
    assert len(collaborations) == 1

    missing = post(
        client,
        {
            "action": "request_collaboration",
            "requestingAgent": "ghost",
            "targetAgent": "product-agent",
            "description": "x",
        },
    )
    assert missing.status_code == 404


def test_register_agent(client: TestClient) -> None:
    response = post(
        client,
        {
            "action": "register_agent",
            "agent": {"id": "billing-agent", "name": "Billing", "type": "billing", "kind": "echo"},
        },
    )

    assert response.json()["data"]["agent_id"] == "billing-agent"
    agents = client.get("/orchestrator", params={"action": "agents"}).json()["data"]
    assert "billing-agent" in {agent["agent_id"] for agent in agents}


def test_trigger_event(client: TestClient) -> None:
    response = post(client, {"action": "trigger_event", "eventType": "lead_created", "context": {"lead_id": "l-1"}})

    executions = response.json()["data"]
    assert len(executions) == 1
    assert executions[0]["triggered_by"] == "event:lead_created"
    assert executions[0]["status"] == "completed"


def test_start_and_stop(client: TestClient) -> None:
    assert post(client, {"action": "start"}).json()["data"] == {"is_running": True}
    assert post(client, {"action": "stop"}).json()["data"] == {"is_running": False}


def test_cancel_task(client: TestClient) -> None:
    task = post(client, {"action": "enqueue_task", "type": "digest"}).json()["data"]

    cancelled = post(client, {"action": "cancel_task", "taskId": task["id"]})
    again = post(client, {"action": "cancel_task", "taskId": task["id"]})

    assert cancelled.json()["data"]["error"] == "cancelled"
    assert again.status_code == 400


def test_update_rejects_null_fields(client: TestClient) -> None:
    target = workflow_id(client, "Lead Processing")
    before = client.get("/orchestrator", params={"action": "workflows"}).json()["data"]

    for updates in ({"priority": None}, {"steps": None}, {"name": None}, {"priority": None, "steps": None}):
        response = client.put("/orchestrator", json={"workflowId": target, "updates": updates})
        assert response.status_code == 400
        assert response.json()["success"] is False

    after = client.get("/orchestrator", params={"action": "workflows"}).json()["data"]
    assert after == before


def test_update_clears_timeout_with_null(client: TestClient) -> None:
    target = workflow_id(client, "Lead Processing")
    client.put("/orchestrator", json={"workflowId": target, "updates": {"timeoutSeconds": 30}})

    response = client.put("/orchestrator", json={"workflowId": target, "updates": {"timeoutSeconds": None}})

    assert response.status_code == 200
    assert response.json()["data"]["timeout_seconds"] is None


def test_register_agent_without_kind_uses_runtime_default(client: TestClient) -> None:
    registered = post(
        client,
        {"action": "register_agent", "agent": {"id": "renewals-agent", "name": "Renewals", "type": "renewals"}},
    )
    assert registered.status_code == 200
    assert registered.json()["data"]["kind"] == "echo"

    created = post(
        client,
        {
            "action": "create_workflow",
            "name": "Renewal Check",
            "steps": [{"id": "check", "name": "Check", "action": "check_renewal", "agentType": "renewals"}],
        },
    ).json()["data"]
    response = post(client, {"action": "execute_workflow", "workflowId": created["id"]})

    assert response.json()["success"] is True
    assert response.json()["data"]["status"] == "completed"
