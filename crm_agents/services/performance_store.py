"""Append-only store of model performance feedback."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from crm_agents.core.models import utcnow
from crm_agents.services.model_catalog import TaskComplexity


@dataclass(frozen=True, slots=True)
class ModelPerformanceRecord:
    model_id: str
    task_type: str
    complexity: TaskComplexity
    success: bool
    response_time_ms: float
    rating: Optional[float] = None
    user_id: Optional[str] = None
    recorded_at: datetime = field(default_factory=utcnow)


class PerformanceStore(Protocol):
    async def append(self, record: ModelPerformanceRecord) -> None:
        ...

    async def query(
        self,
        *,
        model_id: Optional[str] = None,
        task_type: Optional[str] = None,
        complexity: Optional[TaskComplexity] = None,
        user_id: Optional[str] = None,
    ) -> List[ModelPerformanceRecord]:
        ...


class InMemoryPerformanceStore:
    """Process-local store; records are never mutated after insert."""

    def __init__(self) -> None:
        self._records: List[ModelPerformanceRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: ModelPerformanceRecord) -> None:
        async with self._lock:
            self._records.append(record)

    async def query(
        self,
        *,
        model_id: Optional[str] = None,
        task_type: Optional[str] = None,
        complexity: Optional[TaskComplexity] = None,
        user_id: Optional[str] = None,
    ) -> List[ModelPerformanceRecord]:
        return [
            record
            for record in self._records
            if (model_id is None or record.model_id == model_id)
            and (task_type is None or record.task_type == task_type)
            and (complexity is None or record.complexity == complexity)
            and (user_id is None or record.user_id == user_id)
        ]

    def __len__(self) -> int:
        return len(self._records)
