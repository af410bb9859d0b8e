"""Catalog of AI models the router can choose from."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple


class TaskComplexity(str, Enum):
    SIMPLE = "simple"
    STANDARD = "standard"
    COMPLEX = "complex"


AUTO_MODEL = "auto"


@dataclass(frozen=True, slots=True)
class ModelCapabilities:
    reasoning: int
    speed: int
    creativity: int
    accuracy: int


@dataclass(frozen=True, slots=True)
class ModelConfig:
    id: str
    name: str
    provider: str
    max_tokens: int
    cost_per_1k_tokens: float
    capabilities: ModelCapabilities
    suitable_for: Tuple[TaskComplexity, ...]
    description: str = ""

    def suits(self, complexity: TaskComplexity) -> bool:
        return complexity in self.suitable_for


DEFAULT_MODELS: Tuple[ModelConfig, ...] = (
    ModelConfig(
        id="gpt-3.5-turbo",
        name="GPT-3.5 Turbo",
        provider="openai",
        max_tokens=4096,
        cost_per_1k_tokens=0.0015,
        capabilities=ModelCapabilities(reasoning=7, speed=9, creativity=7, accuracy=8),
        suitable_for=(TaskComplexity.SIMPLE, TaskComplexity.STANDARD),
        description="Fast and cost-effective for simple tasks",
    ),
    ModelConfig(
        id="gpt-4o-mini",
        name="GPT-4o Mini",
        provider="openai",
        max_tokens=8192,
        cost_per_1k_tokens=0.00015,
        capabilities=ModelCapabilities(reasoning=8, speed=8, creativity=8, accuracy=9),
        suitable_for=(TaskComplexity.SIMPLE, TaskComplexity.STANDARD),
        description="Best balance of performance and cost",
    ),
    ModelConfig(
        id="gpt-4o",
        name="GPT-4o",
        provider="openai",
        max_tokens=8192,
        cost_per_1k_tokens=0.005,
        capabilities=ModelCapabilities(reasoning=10, speed=7, creativity=9, accuracy=10),
        suitable_for=(TaskComplexity.STANDARD, TaskComplexity.COMPLEX),
        description="Most capable model for complex reasoning",
    ),
    ModelConfig(
        id="gpt-4",
        name="GPT-4",
        provider="openai",
        max_tokens=8192,
        cost_per_1k_tokens=0.03,
        capabilities=ModelCapabilities(reasoning=9, speed=6, creativity=9, accuracy=9),
        suitable_for=(TaskComplexity.COMPLEX,),
        description="Premium model for highest quality results",
    ),
)

# Preferred pick per tier when performance history cannot separate candidates.
TIER_DEFAULTS: Dict[TaskComplexity, str] = {
    TaskComplexity.SIMPLE: "gpt-4o-mini",
    TaskComplexity.STANDARD: "gpt-4o-mini",
    TaskComplexity.COMPLEX: "gpt-4o",
}
