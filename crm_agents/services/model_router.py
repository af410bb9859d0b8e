"""Choose which AI model handles a task.

Selection filters the catalog by complexity tier, ranks the compatible models
by recent success rate, and breaks ties with the caller's historical
preferences before falling back to the tier default.
"""
from __future__ import annotations

import math
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from crm_agents.config import RouterWeights
from crm_agents.core.logging import get_logger
from crm_agents.core.models import utcnow
from crm_agents.services.model_catalog import (
    AUTO_MODEL,
    DEFAULT_MODELS,
    TIER_DEFAULTS,
    ModelConfig,
    TaskComplexity,
)
from crm_agents.services.performance_store import ModelPerformanceRecord, PerformanceStore

logger = get_logger(name=__name__)

_SIMPLE_PATTERNS = (
    re.compile(r"^(add|create|show|list|find|get)\s+\w+"),
    re.compile(r"\b(supplier|product|contact)\b.*\b(email|phone|name)\b"),
    re.compile(r"^(what|who|when|where)\s+"),
)
_STANDARD_PATTERNS = (
    re.compile(r"\b(update|modify|change)\b.*\bwhere\b"),
    re.compile(r"\b(filter|sort|group)\b"),
    re.compile(r"\bmultiple\b.*\b(criteria|conditions)\b"),
    re.compile(r"\b(analyze|compare|calculate)\b"),
)
_COMPLEX_PATTERNS = (
    re.compile(r"\b(cross|join|relationship|correlation)\b"),
    re.compile(r"\b(if|then|else|when|unless)\b.*\b(and|or)\b"),
    re.compile(r"\b(optimize|recommend|suggest|predict)\b"),
    re.compile(r"\b(report|dashboard|visualization)\b"),
    re.compile(r"\bmultiple\b.*\b(tables|entities|sources)\b"),
)
_CONNECTIVES = ("however", "therefore", "nevertheless", "furthermore", "moreover", "consequently")
_LOGICAL_OPERATORS = ("and", "or", "but", "if", "then", "unless", "except")
_TECHNICAL_TERMS = ("database", "query", "relationship", "foreign key", "index", "aggregate", "pivot")

_TASK_TYPE_KEYWORDS = (
    ("CREATE", ("add", "create")),
    ("UPDATE", ("update", "modify", "change")),
    ("DELETE", ("delete", "remove")),
    ("SEARCH", ("find", "search", "show", "list")),
    ("ANALYZE", ("analyze", "report", "calculate")),
)

_TOKEN_MULTIPLIER = {
    TaskComplexity.SIMPLE: 2,
    TaskComplexity.STANDARD: 4,
    TaskComplexity.COMPLEX: 8,
}


@dataclass(slots=True)
class TaskAnalysis:
    complexity: TaskComplexity
    confidence: float
    task_type: str
    suggested_model: str
    alternative_models: List[str] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)
    estimated_tokens: int = 0
    estimated_cost: float = 0.0


class ModelRouter:
    """Route tasks to models using complexity tiers and feedback history."""

    def __init__(
        self,
        store: PerformanceStore,
        *,
        models: Iterable[ModelConfig] = DEFAULT_MODELS,
        weights: Optional[RouterWeights] = None,
        clock=utcnow,
    ) -> None:
        self._store = store
        self._models: Dict[str, ModelConfig] = {model.id: model for model in models}
        self._weights = weights or RouterWeights()
        self._clock = clock

    @property
    def weights(self) -> RouterWeights:
        return self._weights

    def get_model(self, model_id: str) -> Optional[ModelConfig]:
        return self._models.get(model_id)

    def list_models(self) -> List[ModelConfig]:
        return list(self._models.values())

    def models_for(self, complexity: TaskComplexity) -> List[ModelConfig]:
        return [model for model in self._models.values() if model.suits(complexity)]

    async def record_model_performance(
        self,
        model_id: str,
        task_type: str,
        complexity: TaskComplexity,
        success: bool,
        response_time_ms: float,
        rating: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> ModelPerformanceRecord:
        record = ModelPerformanceRecord(
            model_id=model_id,
            task_type=task_type,
            complexity=complexity,
            success=success,
            response_time_ms=response_time_ms,
            rating=rating,
            user_id=user_id,
            recorded_at=self._clock(),
        )
        await self._store.append(record)
        logger.debug(
            "model_performance_recorded",
            model_id=model_id,
            task_type=task_type,
            complexity=complexity.value,
            success=success,
        )
        return record

    async def get_user_preferred_models(
        self,
        task_type: str,
        complexity: Optional[TaskComplexity] = None,
        user_id: Optional[str] = None,
    ) -> List[str]:
        """Rank models by the caller's recency- and strength-weighted ratings.

        Returns ``["auto"]`` when the caller has no rated history.
        """
        records = await self._store.query(task_type=task_type, complexity=complexity, user_id=user_id)
        rated = [record for record in records if record.rating is not None]
        if not rated:
            return [AUTO_MODEL]

        now = self._clock()
        weight_sum: Dict[str, float] = defaultdict(float)
        weighted_rating: Dict[str, float] = defaultdict(float)
        response_times: Dict[str, List[float]] = defaultdict(list)
        for record in rated:
            weight = self._record_weight(record, now)
            weight_sum[record.model_id] += weight
            weighted_rating[record.model_id] += weight * record.rating
            response_times[record.model_id].append(record.response_time_ms)

        scored = []
        for model_id, total in weight_sum.items():
            if total <= 0:
                continue
            score = weighted_rating[model_id] / total
            if score < self._weights.min_preferred_rating:
                continue
            mean_response = sum(response_times[model_id]) / len(response_times[model_id])
            scored.append((-score, mean_response, model_id))

        if not scored:
            return [AUTO_MODEL]
        scored.sort()
        return [model_id for _, _, model_id in scored[: self._weights.preferred_limit]]

    def _record_weight(self, record: ModelPerformanceRecord, now: datetime) -> float:
        age_days = max(0.0, (now - record.recorded_at).total_seconds() / 86400)
        half_life = self._weights.recency_half_life_days
        weight = math.pow(0.5, age_days / half_life) if half_life > 0 else 1.0
        if record.rating is not None and record.rating >= self._weights.strong_rating:
            weight *= self._weights.strong_signal_boost
        return weight

    async def success_rate(self, model_id: str, task_type: str, complexity: TaskComplexity) -> float:
        records = await self._store.query(model_id=model_id, task_type=task_type, complexity=complexity)
        recent = sorted(records, key=lambda record: record.recorded_at)[-self._weights.success_window:]
        if not recent:
            return self._weights.default_success_rate
        return sum(1 for record in recent if record.success) / len(recent)

    async def select_model(
        self,
        complexity: TaskComplexity,
        task_type: str = "general",
        user_preference: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        if user_preference:
            preferred = self._models.get(user_preference)
            if preferred is not None and preferred.suits(complexity):
                return user_preference

        candidates = self.models_for(complexity)
        if not candidates:
            return TIER_DEFAULTS.get(complexity, "gpt-4o-mini")

        preferences = await self.get_user_preferred_models(task_type, complexity, user_id)
        catalog_order = list(self._models)
        tier_default = TIER_DEFAULTS.get(complexity)

        ranked = []
        for model in candidates:
            rate = await self.success_rate(model.id, task_type, complexity)
            preference_rank = preferences.index(model.id) if model.id in preferences else len(preferences)
            ranked.append(
                (
                    -rate,
                    preference_rank,
                    0 if model.id == tier_default else 1,
                    catalog_order.index(model.id),
                    model.id,
                )
            )
        ranked.sort()
        return ranked[0][-1]

    def alternatives(self, complexity: TaskComplexity, selected: str) -> List[str]:
        return [
            model.id
            for model in sorted(
                self.models_for(complexity),
                key=lambda model: model.capabilities.accuracy,
                reverse=True,
            )
            if model.id != selected
        ]

    async def learn_from_user_override(
        self,
        original_model: str,
        selected_model: str,
        task_type: str,
        complexity: TaskComplexity,
        success: bool,
        user_id: Optional[str] = None,
    ) -> None:
        await self.record_model_performance(
            selected_model, task_type, complexity, success, 0, rating=5 if success else 3, user_id=user_id
        )
        if success and original_model != selected_model:
            await self.record_model_performance(
                original_model, task_type, complexity, False, 0, rating=2, user_id=user_id
            )

    async def analyze_task_complexity(
        self,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> TaskAnalysis:
        pattern_score = _pattern_score(message)
        linguistic_score = _linguistic_score(message)
        context_score = _context_score(message, context)
        score = pattern_score * 0.4 + linguistic_score * 0.35 + context_score * 0.25

        if score <= 3:
            complexity = TaskComplexity.SIMPLE
            confidence = min(0.9, 0.6 + (3 - score) * 0.1)
        elif score <= 7:
            complexity = TaskComplexity.STANDARD
            confidence = min(0.85, 0.7 - abs(5 - score) * 0.05)
        else:
            complexity = TaskComplexity.COMPLEX
            confidence = min(0.9, 0.6 + (score - 7) * 0.1)

        task_type = self.extract_task_type(message)
        suggested = await self.select_model(complexity, task_type, user_id=user_id)
        tokens = self.estimate_tokens(message, complexity)

        reasoning = [
            f"Complexity score {score:.1f}/10",
            f"Pattern analysis {pattern_score:.1f}/10",
            f"Language complexity {linguistic_score:.1f}/10",
            f"Context factors {context_score:.1f}/10",
        ]
        if pattern_score >= 7:
            reasoning.append("Detected operations requiring advanced reasoning")
        elif pattern_score <= 3:
            reasoning.append("Simple, straightforward request")
        if len(message) > 150:
            reasoning.append("Long message suggests detailed requirements")

        return TaskAnalysis(
            complexity=complexity,
            confidence=round(confidence, 3),
            task_type=task_type,
            suggested_model=suggested,
            alternative_models=self.alternatives(complexity, suggested),
            reasoning=reasoning,
            estimated_tokens=tokens,
            estimated_cost=self.estimate_cost(tokens, suggested),
        )

    @staticmethod
    def extract_task_type(message: str) -> str:
        lower = message.lower()
        for task_type, keywords in _TASK_TYPE_KEYWORDS:
            if any(keyword in lower for keyword in keywords):
                return task_type
        return "general"

    @staticmethod
    def estimate_tokens(message: str, complexity: TaskComplexity) -> int:
        base_tokens = math.ceil(len(message) / 4)
        return math.ceil(base_tokens * _TOKEN_MULTIPLIER.get(complexity, 3))

    def estimate_cost(self, tokens: int, model_id: str) -> float:
        model = self._models.get(model_id)
        if model is None:
            return 0.0
        return tokens / 1000 * model.cost_per_1k_tokens


def _pattern_score(message: str) -> float:
    lower = message.lower()
    score = 0
    if _matches_any(_SIMPLE_PATTERNS, lower):
        score = max(score, 2)
    if _matches_any(_STANDARD_PATTERNS, lower):
        score = max(score, 5)
    if _matches_any(_COMPLEX_PATTERNS, lower):
        score = max(score, 8)
    if score == 0:
        if len(message) < 20:
            score = 1
        elif len(message) < 100:
            score = 3
        elif len(message) < 200:
            score = 6
        else:
            score = 8
    return min(10, score)


def _linguistic_score(message: str) -> float:
    lower = message.lower()
    words = len(message.split())
    if words <= 5:
        score = 1
    elif words <= 15:
        score = 3
    elif words <= 30:
        score = 6
    else:
        score = 8

    sentences = [part for part in re.split(r"[.!?]+", message) if part.strip()]
    if len(sentences) > 3:
        score += 2
    score += sum(1 for word in _CONNECTIVES if word in lower)
    score += min(3, sum(1 for op in _LOGICAL_OPERATORS if f" {op} " in lower))
    score += min(2, sum(1 for term in _TECHNICAL_TERMS if term in lower))
    return min(10, score)


def _context_score(message: str, context: Optional[Mapping[str, Any]]) -> float:
    score = 3
    if not isinstance(context, Mapping) or not context:
        return score
    if context.get("last_entity") and "and" in message.lower():
        score += 2
    if context.get("last_action") in ("ANALYZE", "CROSS_ENTITY"):
        score += 2
    recently_created = context.get("recently_created")
    if isinstance(recently_created, Mapping) and len(recently_created) > 1:
        score += 1
    history = context.get("conversation_history")
    if isinstance(history, Sequence) and len(history) > 5:
        score += 1
    return min(10, score)


def _matches_any(patterns, text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)
