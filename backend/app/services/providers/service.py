"""Executor registry and factory."""

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.services.providers.base import TaskExecutor
from app.services.providers.gemini import GeminiExecutor
from app.services.providers.openai import OpenAIExecutor
from app.services.providers.perplexity import PerplexityExecutor

logger = get_logger(__name__)


class ExecutorRegistry:
    """Resolves a provider name to its executor."""

    def __init__(self, executors: list[TaskExecutor] | None = None):
        self._executors: dict[str, TaskExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: TaskExecutor) -> None:
        self._executors[executor.provider] = executor

    def get(self, provider: str) -> TaskExecutor | None:
        return self._executors.get(provider)

    @property
    def providers(self) -> list[str]:
        return sorted(self._executors)

    async def aclose(self) -> None:
        for executor in self._executors.values():
            await executor.aclose()


def build_executor_registry(client: httpx.AsyncClient | None = None) -> ExecutorRegistry:
    """
    Build executors for every provider with a configured API key.

    Args:
        client: Shared HTTP client (each executor creates its own if None)

    Returns:
        ExecutorRegistry
    """
    registry = ExecutorRegistry()
    configured = [
        (OpenAIExecutor, settings.OPENAI_API_KEY, settings.OPENAI_MODEL),
        (PerplexityExecutor, settings.PERPLEXITY_API_KEY, settings.PERPLEXITY_MODEL),
        (GeminiExecutor, settings.GEMINI_API_KEY, settings.GEMINI_MODEL),
    ]
    for executor_cls, api_key, model in configured:
        if not api_key:
            logger.info(f"Provider {executor_cls.provider} not configured, tasks for it will fail")
            continue
        registry.register(
            executor_cls(api_key=api_key, model=model, client=client, timeout=settings.TASK_TIMEOUT_SECONDS)
        )
    logger.info(f"Executor registry initialized: {registry.providers}")
    return registry


# Global registry instance
_registry: ExecutorRegistry | None = None


def get_executor_registry() -> ExecutorRegistry:
    """Process-wide executor registry (FastAPI dependency)."""
    global _registry
    if _registry is None:
        _registry = build_executor_registry()
    return _registry


async def close_executor_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.aclose()
        _registry = None
