"""Base agent definition used by the orchestrator."""
from __future__ import annotations

import abc
import asyncio
import time
from typing import Any, List

from crm_agents.core.cancellation import Deadline
from crm_agents.core.errors import DeadlineExceeded
from crm_agents.core.models import (
    AgentCapability,
    AgentDescriptor,
    AgentStatus,
    AgentThought,
    Task,
    ThoughtType,
)


class Agent(abc.ABC):
    """Abstract agent wrapping a descriptor and a single task handler."""

    def __init__(self, descriptor: AgentDescriptor, *, max_thoughts: int = 200) -> None:
        self.descriptor = descriptor
        self._max_thoughts = max_thoughts
        self._in_flight = 0

    @property
    def agent_id(self) -> str:
        return self.descriptor.agent_id

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def type(self) -> str:
        return self.descriptor.type

    @property
    def status(self) -> AgentStatus:
        return self.descriptor.status

    @property
    def capabilities(self) -> List[AgentCapability]:
        return self.descriptor.capabilities

    async def run_task(self, task: Task, deadline: Deadline) -> Any:
        """Handle ``task`` within ``deadline`` and keep metrics up to date."""
        deadline.check()
        self._in_flight += 1
        self.descriptor.status = AgentStatus.BUSY
        started = time.monotonic()
        success = False
        try:
            try:
                result = await asyncio.wait_for(
                    self.handle_task(task, deadline), timeout=deadline.remaining()
                )
            except asyncio.TimeoutError as exc:
                raise DeadlineExceeded(f"Task {task.id} exceeded its deadline") from exc
            success = True
            return result
        except Exception as exc:
            self.descriptor.metrics.last_error = str(exc)
            self.think(ThoughtType.REFLECTION, f"Task failed: {exc}", task_id=task.id)
            raise
        finally:
            elapsed_ms = (time.monotonic() - started) * 1000
            self.descriptor.metrics.record(success, elapsed_ms)
            self._in_flight -= 1
            # Stay busy while other dispatches are still running
            if self._in_flight == 0 and self.descriptor.status is AgentStatus.BUSY:
                self.descriptor.status = AgentStatus.IDLE

    def think(self, thought_type: ThoughtType, content: str, **metadata: Any) -> AgentThought:
        """Append an entry to the agent's reasoning trace."""
        thought = AgentThought(type=thought_type, content=content, metadata=metadata)
        thoughts = self.descriptor.thoughts
        thoughts.append(thought)
        if len(thoughts) > self._max_thoughts:
            del thoughts[: len(thoughts) - self._max_thoughts]
        self.descriptor.metrics.total_thoughts += 1
        return thought

    @abc.abstractmethod
    async def handle_task(self, task: Task, deadline: Deadline) -> Any:
        """Process one task and return its output."""
