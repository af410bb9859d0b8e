"""Lightweight in-memory bus fanning orchestrator events out to subscribers."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from .models import OrchestratorEvent


class EventBus:
    """Async hub delivering every published event to each subscriber's queue."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, asyncio.Queue[OrchestratorEvent]] = {}
        self._lock = asyncio.Lock()

    async def register(self, subscriber_id: str) -> asyncio.Queue[OrchestratorEvent]:
        async with self._lock:
            return self._subscribers.setdefault(subscriber_id, asyncio.Queue())

    async def unregister(self, subscriber_id: str) -> None:
        async with self._lock:
            self._subscribers.pop(subscriber_id, None)

    def publish(self, event_type: str, subject_id: str, **data: Any) -> OrchestratorEvent:
        """Deliver an event without suspending the publisher."""
        event = OrchestratorEvent(type=event_type, subject_id=subject_id, data=data)
        for queue in list(self._subscribers.values()):
            queue.put_nowait(event)
        return event

    @asynccontextmanager
    async def subscribe(self, subscriber_id: str) -> AsyncIterator[asyncio.Queue[OrchestratorEvent]]:
        """Context manager yielding the subscriber's event queue."""
        queue = await self.register(subscriber_id)
        try:
            yield queue
        finally:
            await self.unregister(subscriber_id)
