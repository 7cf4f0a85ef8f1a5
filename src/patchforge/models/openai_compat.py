"""OpenAI-compatible chat model client."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlparse, urlunparse

import httpx

from patchforge.models.base import (
    BaseChatModel,
    Completion,
    ModelRequestError,
    RateLimitError,
    ServerError,
    ServiceConnectionError,
    ServiceTimeoutError,
    Usage,
)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class OpenAICompatChatModel(BaseChatModel):
    """HTTP client for OpenAI-compatible chat/completions.

    Errors are mapped onto the service taxonomy in ``models.base``; retrying is
    left to the completion client.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 60,
        max_response_bytes: int = 4_000_000,
        extra_headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        normalized = base_url.strip()
        if not normalized.startswith(("http://", "https://")):
            normalized = f"http://{normalized}"
        self.base_url = normalized.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_response_bytes = max_response_bytes
        self.extra_headers = extra_headers or {}
        self.transport = transport

    def _build_url(self) -> str:
        parsed = urlparse(self.base_url)
        path = parsed.path or ""
        if path in {"", "/"}:
            base_path = "/v1"
        else:
            base_path = path.rstrip("/")
        if base_path.endswith("/chat/completions"):
            final_path = base_path
        else:
            final_path = f"{base_path}/chat/completions"
        return urlunparse(parsed._replace(path=final_path, params="", query="", fragment=""))

    def _request_payload(
        self, model: str, system_prompt: str, payload: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": payload},
            ],
        }
        if options.get("temperature") is not None:
            body["temperature"] = options["temperature"]
        if options.get("max_tokens") is not None:
            body["max_tokens"] = options["max_tokens"]
        return body

    def complete(
        self,
        model: str,
        system_prompt: str,
        payload: str,
        options: dict[str, Any] | None = None,
    ) -> Completion:
        url = self._build_url()
        headers = {"Authorization": f"Bearer {self.api_key}", **self.extra_headers}
        body = self._request_payload(model, system_prompt, payload, options or {})
        timeout = httpx.Timeout(self.timeout_seconds)
        try:
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                response = client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(f"Request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ServiceConnectionError(f"Connection failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitError(
                f"Rate limited: {response.text[:200]}",
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        if response.status_code >= 500:
            raise ServerError(response.status_code, response.text[:200])
        if response.status_code >= 400:
            raise ModelRequestError(f"Request failed {response.status_code}: {response.text[:200]}")
        if len(response.content) > self.max_response_bytes:
            raise ModelRequestError("Response too large")
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise ModelRequestError("Malformed JSON response") from exc

        choices = data.get("choices") or [{}]
        message = choices[0].get("message", {})
        content = message.get("content")
        usage = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict) and "prompt_tokens" in raw_usage:
            usage = Usage(
                prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
                completion_tokens=int(raw_usage.get("completion_tokens") or 0),
            )
        return Completion(text=content if isinstance(content, str) else "", usage=usage)
