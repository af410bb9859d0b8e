"""Deterministic agent used for dry runs and development without a model provider."""
from __future__ import annotations

from typing import Any, Dict

from crm_agents.agents.base import Agent
from crm_agents.core.cancellation import Deadline
from crm_agents.core.models import Task, ThoughtType


class EchoAgent(Agent):
    """Agent that echoes the task input back as its output."""

    async def handle_task(self, task: Task, deadline: Deadline) -> Dict[str, Any]:
        action = task.input.get("action", task.type)
        self.think(ThoughtType.PLANNING, f"Echoing {action}", task_id=task.id)
        payload = {key: value for key, value in task.input.items() if key != "context"}
        return {
            "echo": f"{self.name} handled {action}",
            "agent_id": self.agent_id,
            "input": payload,
        }
