"""LLM-powered agent that routes each task to a model before calling it."""
from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from crm_agents.agents.base import Agent
from crm_agents.core.errors import UpstreamError, ValidationError
from crm_agents.core.logging import get_logger
from crm_agents.core.models import Task, ThoughtType
from crm_agents.services.model_catalog import TaskComplexity

if TYPE_CHECKING:
    from crm_agents.core.cancellation import Deadline
    from crm_agents.core.models import AgentDescriptor
    from crm_agents.services.llm_pool import LLMPool
    from crm_agents.services.model_router import ModelRouter

logger = get_logger(name=__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant agent in a multi-agent CRM system."


class LLMAgent(Agent):
    """Agent that asks the model router for a model and answers through the LLM pool."""

    def __init__(
        self,
        descriptor: AgentDescriptor,
        llm_pool: LLMPool,
        router: ModelRouter,
        *,
        max_thoughts: int = 200,
    ) -> None:
        super().__init__(descriptor, max_thoughts=max_thoughts)
        self._llm_pool = llm_pool
        self._router = router
        self.system_prompt = descriptor.metadata.get("system_prompt", DEFAULT_SYSTEM_PROMPT)
        self.temperature = float(descriptor.metadata.get("temperature", 0.7))
        self._background: Set[asyncio.Task[Any]] = set()

    async def handle_task(self, task: Task, deadline: Deadline) -> Dict[str, Any]:
        prompt = self.build_prompt(task)
        user_id = task.input.get("user_id")

        complexity = self._explicit_complexity(task)
        task_type = task.input.get("task_type")
        if complexity is None:
            analysis = await self._router.analyze_task_complexity(
                prompt, task.input.get("context"), user_id=user_id
            )
            complexity = analysis.complexity
            task_type = task_type or analysis.task_type
        task_type = task_type or self._router.extract_task_type(prompt)

        model = await self._router.select_model(
            complexity,
            task_type,
            user_preference=task.input.get("model") or self.descriptor.metadata.get("model"),
            user_id=user_id,
        )
        self.think(
            ThoughtType.PLANNING,
            f"Routing {task_type} task to {model} ({complexity.value})",
            task_id=task.id,
            model=model,
        )

        deadline.check()
        started = time.monotonic()
        try:
            content = await self._llm_pool.complete(
                model,
                self._messages(prompt),
                temperature=self.temperature,
                timeout=deadline.remaining(),
            )
        except UpstreamError:
            self._record_performance(model, task_type, complexity, False, started, user_id)
            raise
        self._record_performance(model, task_type, complexity, True, started, user_id)
        self.think(ThoughtType.ACTION, f"Received answer from {model}", task_id=task.id)

        return {
            "response": content,
            "model": model,
            "complexity": complexity.value,
            "task_type": task_type,
            "agent_name": self.name,
        }

    def build_prompt(self, task: Task) -> str:
        prompt = task.input.get("prompt") or task.input.get("content")
        if prompt:
            return str(prompt)
        parts: List[str] = []
        if task.input.get("description"):
            parts.append(str(task.input["description"]))
        if task.input.get("action"):
            parts.append(f"Action: {task.input['action']}")
        extra = {
            key: value
            for key, value in task.input.items()
            if key not in {"description", "action", "user_id", "model", "complexity", "task_type"}
        }
        if extra:
            parts.append("Input:\n" + json.dumps(extra, default=str, indent=2))
        if not parts:
            raise ValidationError(f"Task {task.id} has no prompt to send to a model")
        return "\n".join(parts)

    async def drain_background(self) -> None:
        """Wait for pending performance writes; used on shutdown and in tests."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _messages(self, prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]

    @staticmethod
    def _explicit_complexity(task: Task) -> Optional[TaskComplexity]:
        value = task.input.get("complexity")
        if value is None:
            return None
        try:
            return TaskComplexity(str(value).lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown complexity '{value}'") from exc

    def _record_performance(
        self,
        model: str,
        task_type: str,
        complexity: TaskComplexity,
        success: bool,
        started: float,
        user_id: Optional[str],
    ) -> None:
        """Write feedback in the background so dispatch never waits on the store."""
        elapsed_ms = (time.monotonic() - started) * 1000
        background = asyncio.create_task(
            self._router.record_model_performance(
                model, task_type, complexity, success, elapsed_ms, user_id=user_id
            )
        )
        self._background.add(background)
        background.add_done_callback(self._on_recorded)

    def _on_recorded(self, background: asyncio.Task[Any]) -> None:
        self._background.discard(background)
        if not background.cancelled() and background.exception() is not None:
            logger.warning(
                "model_performance_write_failed",
                agent_id=self.agent_id,
                error=str(background.exception()),
            )
