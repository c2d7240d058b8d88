"""Shared HTTP plumbing for provider executors."""

import asyncio
import logging
from abc import abstractmethod
from typing import Any

import httpx

from app.core.config import settings
from app.services.providers.base import (
    ExecutionResult,
    ProviderNotConfiguredError,
    TaskExecutor,
    TaskRequest,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}

SYSTEM_PROMPT = (
    "You are a helpful assistant. When recommending products, platforms or companies, "
    "be specific and name them."
)


class HTTPTaskExecutor(TaskExecutor):
    """Executor backed by one JSON HTTP endpoint, with retries."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        client: httpx.AsyncClient | None = None,
        max_retries: int | None = None,
        retry_base_seconds: float | None = None,
        timeout: float = 60.0,
    ):
        """
        Initialize executor.

        Args:
            api_key: Provider API key
            model: Model name
            client: Shared client (a new one is created if None)
            max_retries: Attempts per task
            retry_base_seconds: Backoff base; attempt n waits base * 2**n
            timeout: HTTP timeout in seconds
        """
        self.api_key = api_key
        self.model = model
        self.max_retries = max_retries or settings.PROVIDER_MAX_RETRIES
        self.retry_base_seconds = (
            settings.PROVIDER_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        )
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @abstractmethod
    def build_request(self, request: TaskRequest) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json body)."""

    @abstractmethod
    def parse_response(self, data: dict[str, Any]) -> ExecutionResult:
        """Map a decoded payload to an ExecutionResult."""

    async def execute(self, request: TaskRequest) -> ExecutionResult:
        if not self.api_key:
            raise ProviderNotConfiguredError(f"{self.provider} API key is not configured")

        url, headers, body = self.build_request(request)
        last_error = "no attempts made"
        for attempt in range(self.max_retries):
            try:
                resp = await self.client.post(url, headers=headers, json=body)
                resp.raise_for_status()
                return self.parse_response(resp.json())
            except httpx.HTTPStatusError as e:
                last_error = f"HTTP {e.response.status_code}: {e.response.text[:500]}"
                if e.response.status_code not in RETRYABLE_STATUS:
                    break
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            except (KeyError, IndexError, ValueError) as e:
                # Malformed payloads are not worth retrying
                last_error = f"Unexpected response shape: {e}"
                break

            if attempt < self.max_retries - 1:
                delay = self.retry_base_seconds * (2**attempt)
                logger.warning(
                    f"{self.provider} call failed (attempt {attempt + 1}/{self.max_retries}), "
                    f"retrying in {delay}s: {last_error}",
                    extra={"task_id": str(request.task_id), "provider": self.provider},
                )
                await asyncio.sleep(delay)

        return ExecutionResult.failure(last_error, model=self.model)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class ChatCompletionsExecutor(HTTPTaskExecutor):
    """OpenAI-compatible /chat/completions endpoint."""

    base_url = ""

    def build_request(self, request: TaskRequest) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": request.prompt_text},
            ],
            "max_tokens": 1500,
            "temperature": 0.7,
        }
        return f"{self.base_url}/chat/completions", headers, body

    def parse_response(self, data: dict[str, Any]) -> ExecutionResult:
        usage = data.get("usage") or {}
        return ExecutionResult(
            success=True,
            response_text=data["choices"][0]["message"]["content"],
            model=data.get("model", self.model),
            token_in=usage.get("prompt_tokens"),
            token_out=usage.get("completion_tokens"),
            raw={"id": data.get("id"), "citations": data.get("citations", [])},
        )
