import json
from pathlib import Path

import pytest

from patchforge.telemetry import DEFAULT_PRICE, TelemetryCollector, estimate_cost, price_for


def test_role_specific_price_overrides_model_price():
    pricing = {"o3": (2.0, 8.0), "reviewer:o3": (1.0, 1.0)}
    assert price_for("reviewer", "o3", pricing) == (1.0, 1.0)
    assert price_for("planner", "o3", pricing) == (2.0, 8.0)
    assert price_for("planner", "mystery-model", pricing) == DEFAULT_PRICE


def test_estimate_cost_per_million_tokens():
    assert estimate_cost("implementer", "o4-mini", 1000, 500) == pytest.approx(0.0033)


def test_summary_compares_with_baseline_on_same_tokens():
    collector = TelemetryCollector()
    collector.record("implementer", "o4-mini", 1000, 500, duration_ms=10)
    collector.record("implementer", "o4-mini", 1000, 500, duration_ms=12)
    summary = collector.summary(baseline_model="o3")
    assert summary.total_calls == 2
    assert summary.per_role["implementer"].calls == 2
    assert summary.per_role["implementer"].tokens_in == 2000
    assert summary.cost_usd == pytest.approx(0.0066)
    assert summary.baseline_cost_usd == pytest.approx(0.012)
    assert summary.savings_pct == pytest.approx(45.0)
    assert "Saved $0.0054 (45.0%) vs o3" in summary.message()


def test_more_expensive_roles_report_extra_cost():
    collector = TelemetryCollector()
    collector.record("planner", "gpt-4o", 1000, 1000, duration_ms=5)
    summary = collector.summary(baseline_model="o4-mini")
    assert summary.savings_usd < 0
    assert "more than o4-mini" in summary.message()


def test_empty_summary_has_no_savings():
    summary = TelemetryCollector().summary()
    assert summary.total_calls == 0
    assert summary.savings_pct == 0.0
    assert summary.to_dict()["per_role"] == {}


def test_flush_appends_jsonl_with_run_id(tmp_path: Path):
    collector = TelemetryCollector(workspace_dir=tmp_path)
    collector.start("run-1")
    collector.record("planner", "o3", 10, 5, duration_ms=3)
    path = collector.flush()
    assert path is not None and path.parent == tmp_path / "metrics"
    lines = path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["run_id"] == "run-1"

    collector.start("run-2")
    assert collector.records == []
    assert collector.flush() is None
    collector.record("planner", "o3", 10, 5, duration_ms=3)
    collector.flush()
    assert len(path.read_text(encoding="utf-8").splitlines()) == 2


def test_flush_without_workspace_writes_nothing():
    collector = TelemetryCollector()
    collector.record("planner", "o3", 1, 1, duration_ms=1)
    assert collector.flush() is None
