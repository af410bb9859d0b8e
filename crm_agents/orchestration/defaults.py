"""Built-in CRM workflows installed at startup."""
from __future__ import annotations

from typing import List

from crm_agents.core.models import TaskPriority
from crm_agents.orchestration.orchestrator import Orchestrator
from crm_agents.orchestration.workflows import StepCondition, Workflow, WorkflowStep, WorkflowTrigger

DEFAULT_AGENT_TYPES = ("email", "sales", "customer", "product", "general")


def install_default_workflows(orchestrator: Orchestrator) -> List[Workflow]:
    """Create the onboarding, lead processing and support workflows."""
    return [orchestrator.create_workflow(**definition).unwrap() for definition in _definitions()]


def _definitions():
    yield dict(
        name="Customer Onboarding",
        description="Complete customer onboarding process",
        triggers=[WorkflowTrigger(type="event", event_type="customer_signup")],
        priority=TaskPriority.HIGH,
        timeout_seconds=300,
        steps=[
            WorkflowStep(
                id="welcome_email",
                name="Send Welcome Email",
                agent_type="email",
                action="send_welcome_email",
                parameters={"template": "welcome"},
                timeout_seconds=30,
            ),
            WorkflowStep(
                id="create_profile",
                name="Create Customer Profile",
                agent_type="customer",
                action="create_profile",
                dependencies=["welcome_email"],
                timeout_seconds=60,
            ),
            WorkflowStep(
                id="product_recommendations",
                name="Generate Product Recommendations",
                agent_type="product",
                action="generate_recommendations",
                dependencies=["create_profile"],
                timeout_seconds=45,
            ),
        ],
    )
    yield dict(
        name="Lead Processing",
        description="Process and qualify new leads",
        triggers=[WorkflowTrigger(type="event", event_type="lead_created")],
        priority=TaskPriority.HIGH,
        timeout_seconds=180,
        steps=[
            WorkflowStep(
                id="lead_qualification",
                name="Qualify Lead",
                agent_type="sales",
                action="lead_qualification",
                timeout_seconds=60,
            ),
            WorkflowStep(
                id="send_followup",
                name="Send Follow-up Email",
                agent_type="email",
                action="send_followup",
                parameters={"template": "lead_followup"},
                dependencies=["lead_qualification"],
                condition=StepCondition("step_lead_qualification_result.qualified", "==", True),
                timeout_seconds=30,
            ),
            WorkflowStep(
                id="create_opportunity",
                name="Create Sales Opportunity",
                agent_type="sales",
                action="create_opportunity",
                dependencies=["lead_qualification"],
                condition=StepCondition("step_lead_qualification_result.score", ">=", 70),
                timeout_seconds=45,
            ),
        ],
    )
    yield dict(
        name="Customer Support",
        description="Handle customer support requests",
        triggers=[WorkflowTrigger(type="event", event_type="support_ticket_created")],
        priority=TaskPriority.HIGH,
        timeout_seconds=120,
        steps=[
            WorkflowStep(
                id="analyze_request",
                name="Analyze Support Request",
                agent_type="customer",
                action="analyze_support_request",
                timeout_seconds=30,
            ),
            WorkflowStep(
                id="generate_response",
                name="Generate Response",
                agent_type="email",
                action="generate_support_response",
                dependencies=["analyze_request"],
                timeout_seconds=45,
            ),
            WorkflowStep(
                id="escalate_if_needed",
                name="Escalate to Human",
                agent_type="general",
                action="escalate_to_human",
                dependencies=["analyze_request"],
                condition=StepCondition("step_analyze_request_result.requires_human", "==", True),
                timeout_seconds=15,
            ),
        ],
    )
