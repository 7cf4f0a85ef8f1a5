"""Mock chat model for offline runs and tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from patchforge.models.base import BaseChatModel, Completion


Scripted = Union[str, Completion, Exception]


@dataclass
class RecordedCall:
    model: str
    system_prompt: str
    payload: str
    options: dict[str, Any]


class MockChatModel(BaseChatModel):
    """Deterministic mock model used when no API key is available.

    Scripted entries are served in order; an ``Exception`` entry is raised
    instead of returned.
    """

    def __init__(self, scripted: list[Scripted] | None = None) -> None:
        self._scripted: list[Scripted] = list(scripted or [])
        self.calls: list[RecordedCall] = []

    def push(self, *items: Scripted) -> None:
        self._scripted.extend(items)

    def complete(
        self,
        model: str,
        system_prompt: str,
        payload: str,
        options: dict[str, Any] | None = None,
    ) -> Completion:
        self.calls.append(RecordedCall(model, system_prompt, payload, dict(options or {})))
        if self._scripted:
            item = self._scripted.pop(0)
            if isinstance(item, Exception):
                raise item
            if isinstance(item, Completion):
                return item
            return Completion(text=item)
        return Completion(text=f"Mock response to: {payload[:200]}")
