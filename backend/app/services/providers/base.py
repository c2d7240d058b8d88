"""Base task executor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID


@dataclass
class TaskRequest:
    """One (prompt, provider) call."""

    task_id: UUID
    prompt_id: UUID
    prompt_text: str
    provider: str


@dataclass
class ExecutionResult:
    """Terminal outcome of a provider call."""

    success: bool
    response_text: str | None = None
    model: str | None = None
    token_in: int | None = None
    token_out: int | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, model: str | None = None) -> "ExecutionResult":
        return cls(success=False, error=error, model=model)

    def payload(self) -> dict[str, Any] | None:
        """Opaque result stored on the task row."""
        if not self.success:
            return None
        return {"response_text": self.response_text, "model": self.model, "raw": self.raw}


class ProviderNotConfiguredError(Exception):
    """Raised when an executor is missing credentials."""


class TaskExecutor(ABC):
    """Base interface for answer-engine providers."""

    provider: str = ""

    @abstractmethod
    async def execute(self, request: TaskRequest) -> ExecutionResult:
        """
        Run one prompt against the provider.

        Args:
            request: Task request

        Returns:
            ExecutionResult. Provider errors are returned, not raised.
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None
