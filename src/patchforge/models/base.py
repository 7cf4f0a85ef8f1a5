"""Base model interfaces and the completion-service error taxonomy."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int


class Completion(BaseModel):
    text: str
    usage: Usage | None = None


class ModelServiceError(RuntimeError):
    """Base class for errors raised by a completion backend."""


class ServiceTimeoutError(ModelServiceError):
    pass


class ServiceConnectionError(ModelServiceError):
    pass


class ServerError(ModelServiceError):
    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"Server error {status_code}: {message}")


class RateLimitError(ModelServiceError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class ModelRequestError(ModelServiceError):
    """Non-retryable request failure (bad request, auth, malformed response)."""


class BaseChatModel(ABC):
    """Abstract chat model interface."""

    @abstractmethod
    def complete(
        self,
        model: str,
        system_prompt: str,
        payload: str,
        options: dict[str, Any] | None = None,
    ) -> Completion:
        """Send one completion request and return the model text."""
        raise NotImplementedError
