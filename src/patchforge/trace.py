"""Trace recorder for orchestrator runs."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from patchforge.failures import FailureEvent
from patchforge.util.logging import redact
from patchforge.workflows.plan import WorkflowStep


@dataclass
class TraceRecorder:
    trace_id: str
    workspace_dir: str
    started_at: float = field(default_factory=time.time)
    events: list[dict[str, Any]] = field(default_factory=list)

    def record(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append(
            {
                "type": event_type,
                "timestamp": time.time(),
                "payload": payload,
            }
        )

    def record_request(self, request: str) -> None:
        self.record("request", {"request": redact(request)})

    def record_step(self, index: int, step: WorkflowStep) -> None:
        output = step.output
        if hasattr(output, "model_dump"):
            rendered = json.dumps(output.model_dump(), default=str)
        else:
            rendered = "" if output is None else str(output)
        self.record(
            "step",
            {
                "index": index,
                "role": step.role.value,
                "kind": step.input.kind,
                "status": step.status,
                "description": redact(step.describe()),
                "output": redact(rendered[:4000]),
                "error": redact(step.error) if step.error else None,
            },
        )

    def record_failure(self, event: FailureEvent) -> None:
        payload = asdict(event)
        payload["reason"] = redact(event.reason)
        self.record("failure", payload)

    def finalize(self, stats: dict[str, Any]) -> str:
        trace_dir = Path(self.workspace_dir) / "traces"
        trace_dir.mkdir(parents=True, exist_ok=True)
        trace_path = trace_dir / f"{self.trace_id}.json"
        payload = {
            "trace_id": self.trace_id,
            "started_at": self.started_at,
            "ended_at": time.time(),
            "stats": stats,
            "events": self.events,
        }
        trace_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        return str(trace_path)
