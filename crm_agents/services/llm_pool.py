"""LLM client pool for shared model access with concurrency control."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import openai

from crm_agents.config import OpenAIConfig
from crm_agents.core.errors import DeadlineExceeded, UpstreamError
from crm_agents.core.logging import get_logger

logger = get_logger(name=__name__)


class LLMPool:
    """Manages shared LLM clients with per-model concurrency limiting."""

    def __init__(self) -> None:
        self._clients: Dict[str, Any] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._initialized: Dict[str, bool] = {}

    def register_openai(self, name: str, config: OpenAIConfig) -> None:
        """Register a model served through an OpenAI-compatible endpoint."""
        self._clients[name] = config
        self._semaphores[name] = asyncio.Semaphore(config.max_concurrent)
        self._initialized[name] = False

    def register_client(self, name: str, client: Any, max_concurrent: int = 50) -> None:
        """Register an already constructed chat-completions client."""
        self._clients[name] = client
        self._semaphores[name] = asyncio.Semaphore(max_concurrent)
        self._initialized[name] = True

    @asynccontextmanager
    async def acquire(self, model_name: str) -> AsyncIterator[Any]:
        """Acquire access to a model client with concurrency control."""
        if model_name not in self._clients:
            raise KeyError(f"Model '{model_name}' not registered in LLM pool")

        semaphore = self._semaphores[model_name]
        await semaphore.acquire()

        try:
            # Lazy initialization on first use
            if not self._initialized[model_name]:
                self._initialize_client(model_name)

            yield self._clients[model_name]
        finally:
            semaphore.release()

    async def complete(
        self,
        model_name: str,
        messages: List[Mapping[str, str]],
        *,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> str:
        """Run one chat completion, bounded by ``timeout`` seconds."""
        try:
            async with self.acquire(model_name) as client:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=model_name,
                        messages=list(messages),
                        temperature=temperature,
                    ),
                    timeout=timeout,
                )
        except KeyError as exc:
            raise UpstreamError(str(exc.args[0] if exc.args else exc)) from exc
        except asyncio.TimeoutError as exc:
            logger.warning("llm_call_timed_out", model=model_name, timeout=timeout)
            raise DeadlineExceeded(f"Model '{model_name}' did not answer within {timeout}s") from exc
        except openai.OpenAIError as exc:
            logger.warning("llm_call_failed", model=model_name, error=str(exc))
            raise UpstreamError(f"Model '{model_name}' request failed: {exc}") from exc

        return response.choices[0].message.content or ""

    def _initialize_client(self, model_name: str) -> None:
        """Lazy initialization of the actual client."""
        config = self._clients[model_name]

        if isinstance(config, OpenAIConfig):
            if config.azure_endpoint:
                client = openai.AsyncAzureOpenAI(
                    api_key=config.api_key,
                    api_version=config.api_version,
                    azure_endpoint=config.azure_endpoint,
                )
            else:
                client = openai.AsyncOpenAI(api_key=config.api_key, base_url=config.base_url)
            self._clients[model_name] = client
        self._initialized[model_name] = True
