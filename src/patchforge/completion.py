"""Role-aware completion client with retry policy and telemetry."""

from __future__ import annotations

import math
import re
import time
from typing import Any, Callable, Mapping

from patchforge.models.base import (
    BaseChatModel,
    Completion,
    RateLimitError,
    ServerError,
    ServiceConnectionError,
    ServiceTimeoutError,
)
from patchforge.roles import DEFAULT_ROLE_CONFIGS, AgentRole, RoleConfig
from patchforge.telemetry import TelemetryCollector
from patchforge.util.logging import get_logger


_RETRY_HINT_RE = re.compile(r"(?:retry|try) again in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)

_IMMEDIATE_RETRY = (ServiceTimeoutError, ServiceConnectionError, ServerError)


class ExhaustedRetries(RuntimeError):
    def __init__(self, attempts: int, last_error: Exception) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Completion failed after {attempts} attempts: {last_error}")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def rate_limit_delay(error: RateLimitError, attempt: int, base_delay: float) -> float:
    """Delay before the next attempt; an explicit server hint wins."""
    match = _RETRY_HINT_RE.search(str(error))
    if match:
        return float(match.group(1))
    if error.retry_after is not None:
        return error.retry_after
    return base_delay * (2 ** (attempt - 1))


class CompletionClient:
    def __init__(
        self,
        backend: BaseChatModel,
        role_configs: Mapping[AgentRole, RoleConfig] | None = None,
        collector: TelemetryCollector | None = None,
        max_retries: int = 5,
        base_delay: float = 2.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.role_configs = dict(role_configs or DEFAULT_ROLE_CONFIGS)
        self.collector = collector
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.sleep = sleep
        self.logger = get_logger("patchforge.completion")

    def model_for(self, role: AgentRole) -> str:
        return self.role_configs[role].model

    def invoke(
        self,
        role: AgentRole,
        system_prompt: str,
        payload: str,
        options: dict[str, Any] | None = None,
    ) -> str:
        config = self.role_configs[role]
        call_options = dict(options or {})
        if config.temperature is not None:
            call_options.setdefault("temperature", config.temperature)

        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            started = time.perf_counter()
            try:
                completion = self.backend.complete(config.model, system_prompt, payload, call_options)
            except RateLimitError as exc:
                last_error = exc
                if attempt == self.max_retries:
                    break
                delay = rate_limit_delay(exc, attempt, self.base_delay)
                self.logger.warning(
                    "Rate limited for %s (attempt %s/%s), sleeping %.1fs",
                    role.value,
                    attempt,
                    self.max_retries,
                    delay,
                )
                self.sleep(delay)
                continue
            except _IMMEDIATE_RETRY as exc:
                last_error = exc
                self.logger.warning(
                    "Transient failure for %s (attempt %s/%s): %s",
                    role.value,
                    attempt,
                    self.max_retries,
                    exc,
                )
                continue
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._record(role, config.model, system_prompt, payload, completion, duration_ms)
            return completion.text
        if last_error is None:
            raise RuntimeError("Completion loop ended without an attempt")
        raise ExhaustedRetries(self.max_retries, last_error)

    def _record(
        self,
        role: AgentRole,
        model: str,
        system_prompt: str,
        payload: str,
        completion: Completion,
        duration_ms: int,
    ) -> None:
        if self.collector is None:
            return
        if completion.usage is not None:
            tokens_in = completion.usage.prompt_tokens
            tokens_out = completion.usage.completion_tokens
        else:
            tokens_in = estimate_tokens(system_prompt + payload)
            tokens_out = estimate_tokens(completion.text)
        self.collector.record(role.value, model, tokens_in, tokens_out, duration_ms)
