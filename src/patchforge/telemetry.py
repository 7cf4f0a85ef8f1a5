"""Per-call usage telemetry and cost accounting."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping


# USD per 1M tokens as (input, output). Keys are "role:model" or "model".
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "o3": (2.0, 8.0),
    "o4-mini": (1.1, 4.4),
    "gpt-4.1": (2.0, 8.0),
    "gpt-4.1-mini": (0.4, 1.6),
    "gpt-4.1-nano": (0.1, 0.4),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
}
DEFAULT_PRICE: tuple[float, float] = (1.0, 4.0)


def price_for(
    role: str, model: str, pricing: Mapping[str, tuple[float, float]] | None = None
) -> tuple[float, float]:
    table = MODEL_PRICING if pricing is None else pricing
    return table.get(f"{role}:{model}") or table.get(model) or DEFAULT_PRICE


def estimate_cost(
    role: str,
    model: str,
    tokens_in: int,
    tokens_out: int,
    pricing: Mapping[str, tuple[float, float]] | None = None,
) -> float:
    price_in, price_out = price_for(role, model, pricing)
    return (tokens_in * price_in + tokens_out * price_out) / 1_000_000


@dataclass(frozen=True)
class TelemetryRecord:
    timestamp: float
    role: str
    model: str
    tokens_in: int
    tokens_out: int
    cost_usd: float
    duration_ms: int


@dataclass
class RoleUsage:
    calls: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0


@dataclass
class TelemetrySummary:
    per_role: dict[str, RoleUsage]
    total_calls: int
    tokens_in: int
    tokens_out: int
    cost_usd: float
    baseline_model: str
    baseline_cost_usd: float

    @property
    def savings_usd(self) -> float:
        return self.baseline_cost_usd - self.cost_usd

    @property
    def savings_pct(self) -> float:
        if self.baseline_cost_usd <= 0:
            return 0.0
        return self.savings_usd / self.baseline_cost_usd * 100

    def message(self) -> str:
        lines = [
            f"Model calls: {self.total_calls}, tokens in/out: {self.tokens_in}/{self.tokens_out}, "
            f"cost: ${self.cost_usd:.4f}"
        ]
        for role, usage in sorted(self.per_role.items()):
            lines.append(
                f"  {role}: {usage.calls} calls, {usage.tokens_in}/{usage.tokens_out} tokens, "
                f"${usage.cost_usd:.4f}"
            )
        if self.savings_usd >= 0:
            lines.append(
                f"Saved ${self.savings_usd:.4f} ({self.savings_pct:.1f}%) vs {self.baseline_model} "
                f"for every role (${self.baseline_cost_usd:.4f})"
            )
        else:
            lines.append(
                f"Cost ${-self.savings_usd:.4f} more than {self.baseline_model} "
                f"for every role (${self.baseline_cost_usd:.4f})"
            )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "per_role": {role: asdict(usage) for role, usage in self.per_role.items()},
            "total_calls": self.total_calls,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cost_usd": self.cost_usd,
            "baseline_model": self.baseline_model,
            "baseline_cost_usd": self.baseline_cost_usd,
            "savings_usd": self.savings_usd,
        }


@dataclass
class TelemetryCollector:
    """Append-only record list for one orchestrator run."""

    workspace_dir: Path | None = None
    pricing: Mapping[str, tuple[float, float]] | None = None
    run_id: str | None = None
    records: list[TelemetryRecord] = field(default_factory=list)

    def start(self, run_id: str) -> None:
        self.run_id = run_id
        self.records = []

    def record(
        self, role: str, model: str, tokens_in: int, tokens_out: int, duration_ms: int
    ) -> TelemetryRecord:
        entry = TelemetryRecord(
            timestamp=time.time(),
            role=role,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=estimate_cost(role, model, tokens_in, tokens_out, self.pricing),
            duration_ms=duration_ms,
        )
        self.records.append(entry)
        return entry

    def summary(self, baseline_model: str = "o3") -> TelemetrySummary:
        per_role: dict[str, RoleUsage] = {}
        baseline = 0.0
        for entry in self.records:
            usage = per_role.setdefault(entry.role, RoleUsage())
            usage.calls += 1
            usage.tokens_in += entry.tokens_in
            usage.tokens_out += entry.tokens_out
            usage.cost_usd += entry.cost_usd
            baseline += estimate_cost(
                entry.role, baseline_model, entry.tokens_in, entry.tokens_out, self.pricing
            )
        return TelemetrySummary(
            per_role=per_role,
            total_calls=len(self.records),
            tokens_in=sum(entry.tokens_in for entry in self.records),
            tokens_out=sum(entry.tokens_out for entry in self.records),
            cost_usd=sum(entry.cost_usd for entry in self.records),
            baseline_model=baseline_model,
            baseline_cost_usd=baseline,
        )

    def flush(self) -> Path | None:
        """Append this run's records to ``<workspace>/metrics/<date>.jsonl``."""
        if not self.workspace_dir or not self.records:
            return None
        metrics_dir = Path(self.workspace_dir) / "metrics"
        metrics_dir.mkdir(parents=True, exist_ok=True)
        file_path = metrics_dir / f"{datetime.now(timezone.utc).date()}.jsonl"
        with file_path.open("a", encoding="utf-8") as handle:
            for entry in self.records:
                payload = {"run_id": self.run_id, **asdict(entry)}
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        return file_path
