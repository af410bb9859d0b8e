"""Configuration management for the orchestrator."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class OpenAIConfig:
    """OpenAI (or Azure OpenAI) service configuration."""

    api_key: str
    base_url: Optional[str] = None
    azure_endpoint: Optional[str] = None
    api_version: str = "2024-02-15-preview"
    max_concurrent: int = 50


@dataclass(frozen=True)
class RouterWeights:
    """Tunable weights used by the model router's preference scoring."""

    strong_rating: float = 4.0
    strong_signal_boost: float = 2.0
    recency_half_life_days: float = 30.0
    min_preferred_rating: float = 3.0
    preferred_limit: int = 3
    success_window: int = 20
    default_success_rate: float = 0.8

    @classmethod
    def from_env(cls) -> RouterWeights:
        defaults = cls()
        return cls(
            strong_rating=float(os.getenv("ROUTER_STRONG_RATING", defaults.strong_rating)),
            strong_signal_boost=float(
                os.getenv("ROUTER_STRONG_SIGNAL_BOOST", defaults.strong_signal_boost)
            ),
            recency_half_life_days=float(
                os.getenv("ROUTER_RECENCY_HALF_LIFE_DAYS", defaults.recency_half_life_days)
            ),
            min_preferred_rating=float(
                os.getenv("ROUTER_MIN_PREFERRED_RATING", defaults.min_preferred_rating)
            ),
            preferred_limit=int(os.getenv("ROUTER_PREFERRED_LIMIT", defaults.preferred_limit)),
            success_window=int(os.getenv("ROUTER_SUCCESS_WINDOW", defaults.success_window)),
            default_success_rate=float(
                os.getenv("ROUTER_DEFAULT_SUCCESS_RATE", defaults.default_success_rate)
            ),
        )


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    openai: Optional[OpenAIConfig] = None
    router: RouterWeights = field(default_factory=RouterWeights)
    environment: str = "development"
    log_level: str = "INFO"
    dispatch_timeout: float = 60.0
    autostart: bool = True
    max_thoughts: int = 200
    install_default_workflows: bool = True

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        api_key = os.getenv("OPENAI_API_KEY")

        openai_config = None
        if api_key:
            openai_config = OpenAIConfig(
                api_key=api_key,
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                azure_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT") or None,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                max_concurrent=int(os.getenv("OPENAI_MAX_CONCURRENT", "50")),
            )

        return cls(
            openai=openai_config,
            router=RouterWeights.from_env(),
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            dispatch_timeout=float(os.getenv("ORCHESTRATOR_DISPATCH_TIMEOUT", "60")),
            autostart=_env_bool("ORCHESTRATOR_AUTOSTART", True),
            max_thoughts=int(os.getenv("ORCHESTRATOR_MAX_THOUGHTS", "200")),
            install_default_workflows=_env_bool("ORCHESTRATOR_DEFAULT_WORKFLOWS", True),
        )
