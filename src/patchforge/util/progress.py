"""Progress event channel written by the orchestrator."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }


class ProgressSink(Protocol):
    def emit(self, event: ProgressEvent) -> None: ...


@dataclass
class ListProgressSink:
    """Collects events in memory; used by tests and the CLI summary."""

    events: list[ProgressEvent] = field(default_factory=list)

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def messages(self, kind: str | None = None) -> list[str]:
        return [event.message for event in self.events if kind is None or event.kind == kind]


@dataclass
class LoggingProgressSink:
    logger: logging.Logger

    def emit(self, event: ProgressEvent) -> None:
        level = logging.WARNING if event.kind in {"step_failed", "run_failed", "check_failed"} else logging.INFO
        self.logger.log(level, "%s: %s", event.kind, event.message)


@dataclass
class CallbackProgressSink:
    callback: Callable[[ProgressEvent], None]

    def emit(self, event: ProgressEvent) -> None:
        self.callback(event)


class FanoutProgressSink:
    def __init__(self, *sinks: ProgressSink) -> None:
        self.sinks = list(sinks)

    def emit(self, event: ProgressEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)
