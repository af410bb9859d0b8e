"""Application runtime composition helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from crm_agents.agents.base import Agent
from crm_agents.agents.echo import EchoAgent
from crm_agents.agents.llm_agent import LLMAgent
from crm_agents.config import Config
from crm_agents.core.events import EventBus
from crm_agents.core.models import AgentCapability, AgentConfig, AgentDescriptor
from crm_agents.core.task_queue import TaskQueue
from crm_agents.orchestration.defaults import DEFAULT_AGENT_TYPES, install_default_workflows
from crm_agents.orchestration.orchestrator import AgentFactory, Orchestrator
from crm_agents.services.llm_pool import LLMPool
from crm_agents.services.model_router import ModelRouter
from crm_agents.services.performance_store import InMemoryPerformanceStore


@dataclass
class Services:
    """Everything the HTTP layer needs, built once per application."""

    config: Config
    orchestrator: Orchestrator
    router: ModelRouter
    llm_pool: LLMPool

    @property
    def default_agent_kind(self) -> str:
        # Without a model provider agents answer deterministically
        return "llm" if self.config.openai else "echo"


def build_llm_pool(config: Config, router: ModelRouter) -> LLMPool:
    pool = LLMPool()

    # Register every catalog model against the configured provider
    if config.openai:
        for model in router.list_models():
            pool.register_openai(model.id, config.openai)

    return pool


def build_agent_catalog(config: Config, llm_pool: LLMPool, router: ModelRouter) -> Dict[str, AgentFactory]:
    def echo(descriptor: AgentDescriptor) -> Agent:
        return EchoAgent(descriptor, max_thoughts=config.max_thoughts)

    def llm(descriptor: AgentDescriptor) -> Agent:
        return LLMAgent(descriptor, llm_pool, router, max_thoughts=config.max_thoughts)

    return {"echo": echo, "llm": llm}


def build_services(config: Config) -> Services:
    router = ModelRouter(InMemoryPerformanceStore(), weights=config.router)
    llm_pool = build_llm_pool(config, router)
    orchestrator = Orchestrator(
        queue=TaskQueue(),
        events=EventBus(),
        agent_catalog=build_agent_catalog(config, llm_pool, router),
        dispatch_timeout=config.dispatch_timeout,
    )

    services = Services(config=config, orchestrator=orchestrator, router=router, llm_pool=llm_pool)
    kind = services.default_agent_kind
    for agent_type in DEFAULT_AGENT_TYPES:
        orchestrator.register_agent_config(
            AgentConfig(
                agent_id=f"{agent_type}-agent",
                name=f"{agent_type.capitalize()} Agent",
                type=agent_type,
                kind=kind,
                capabilities=[AgentCapability(id=agent_type, name=agent_type)],
            )
        ).unwrap()

    if config.install_default_workflows:
        install_default_workflows(orchestrator)

    return services


async def shutdown_services(services: Services) -> None:
    """Stop the drain loop, then flush pending model performance writes."""
    await services.orchestrator.stop()
    for agent in services.orchestrator.list_agents():
        if isinstance(agent, LLMAgent):
            await agent.drain_background()
