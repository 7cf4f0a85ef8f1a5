from __future__ import annotations

import json
from pathlib import Path

import pytest

from patchforge.change_plan import ChangePlan, CommandAction, EditAction
from patchforge.config import Settings
from patchforge.factory import build_orchestrator
from patchforge.models.mock import MockChatModel
from patchforge.orchestrator import Orchestrator, OrchestratorBusyError
from patchforge.safety.policy import ConfirmationDecision, ConfirmationGate, ProposedChange
from patchforge.safety.sandbox import CommandResult
from patchforge.util.progress import ListProgressSink


COORDINATOR_REPLY = json.dumps({"category": "implementation", "steps": []})
PLANNER_REPLY = json.dumps(
    {"actions": [{"kind": "edit", "file": "app.py", "description": "change greeting"}]}
)
IMPLEMENTER_REPLY = (
    "Updated the greeting.\n"
    "*** Begin Patch\n"
    "*** Update File: app.py\n"
    "@@ -1,1 +1,1 @@\n"
    "-greeting = 'hi'\n"
    "+greeting = 'hello'\n"
    "*** End Patch\n"
)
REVIEWER_REPLY = json.dumps({"approved": True, "summary": "Greeting updated"})
NO_RECOVERY = json.dumps({"recovery_steps": []})


class FakeRunner:
    """Scripted command results; unknown commands succeed, git is absent."""

    def __init__(self, outcomes: dict[str, list[CommandResult]] | None = None) -> None:
        self.outcomes = {cmd: list(results) for cmd, results in (outcomes or {}).items()}
        self.commands: list[str] = []

    def exec(self, cmd, timeout=None, cancel_event=None) -> CommandResult:
        self.commands.append(cmd)
        if cmd.startswith("git "):
            return CommandResult(128, "", "fatal: not a git repository", 0.0)
        queue = self.outcomes.get(cmd)
        if queue:
            return queue.pop(0)
        return CommandResult(0, "ok", "", 0.0)


class DenyGate(ConfirmationGate):
    def __init__(self) -> None:
        self.seen: list[ProposedChange] = []

    def confirm(self, change: ProposedChange) -> ConfirmationDecision:
        self.seen.append(change)
        return ConfirmationDecision(False, "not today")


def _failed(output: str) -> CommandResult:
    return CommandResult(1, "", output, 0.0)


def _setup(tmp_path: Path, replies: list, outcomes=None, gate=None, **overrides):
    (tmp_path / "app.py").write_text("greeting = 'hi'\n", encoding="utf-8")
    settings = Settings(
        repo_root=str(tmp_path),
        workspace_dir=str(tmp_path / ".patchforge"),
        auto_approve=True,
        build_command="check-build",
        test_command="run-tests",
        **overrides,
    )
    model = MockChatModel(replies)
    runner = FakeRunner(outcomes)
    progress = ListProgressSink()
    orchestrator = build_orchestrator(settings, model, gate=gate, progress=progress, runner=runner)
    return orchestrator, model, runner, progress


def _edit_plan() -> ChangePlan:
    return ChangePlan(actions=[EditAction(file="app.py", description="set value")])


def test_full_pipeline_completes_with_reviewer_summary(tmp_path: Path):
    orchestrator, model, runner, progress = _setup(
        tmp_path, [COORDINATOR_REPLY, PLANNER_REPLY, IMPLEMENTER_REPLY, REVIEWER_REPLY]
    )
    result = orchestrator.run("Say hello instead of hi")

    assert result.succeeded
    assert result.final_output == "Greeting updated"
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "greeting = 'hello'\n"
    assert len(model.calls) == 4
    assert [step.role.value for step in result.plan.steps] == [
        "planner",
        "implementer",
        "implementer",
        "verifier",
        "reviewer",
    ]
    assert result.plan.steps[2].status == "skipped"
    assert "check-build" in runner.commands
    assert "run-tests" in runner.commands

    context = orchestrator.context
    assert context is not None
    assert context.task_state.modified_files == ["app.py"]
    assert context.task_state.status == "completed"
    assert context.task_state.test_results[0].command == "run-tests"
    assert context.history[0].role == "user"

    assert [check.name for check in result.final_checks] == ["lint", "tests"]
    assert all(check.passed for check in result.final_checks)
    assert progress.messages("run_completed") == ["Greeting updated"]


def test_telemetry_compares_against_baseline(tmp_path: Path):
    orchestrator, _, _, _ = _setup(
        tmp_path, [COORDINATOR_REPLY, PLANNER_REPLY, IMPLEMENTER_REPLY, REVIEWER_REPLY]
    )
    result = orchestrator.run("Say hello instead of hi")
    telemetry = result.telemetry
    assert telemetry is not None
    assert telemetry.total_calls == 4
    assert set(telemetry.per_role) == {"coordinator", "planner", "implementer", "reviewer"}
    assert telemetry.baseline_model == "o3"
    # coordinator and implementer run on a cheaper model than the baseline
    assert telemetry.savings_usd > 0
    metrics = list((tmp_path / ".patchforge" / "metrics").glob("*.jsonl"))
    assert len(metrics) == 1
    assert len(metrics[0].read_text(encoding="utf-8").splitlines()) == 4


def test_trace_is_written(tmp_path: Path):
    orchestrator, _, _, _ = _setup(
        tmp_path, [COORDINATOR_REPLY, PLANNER_REPLY, IMPLEMENTER_REPLY, REVIEWER_REPLY]
    )
    result = orchestrator.run("Say hello instead of hi")
    assert result.trace_path is not None
    trace = json.loads(Path(result.trace_path).read_text(encoding="utf-8"))
    assert trace["stats"]["status"] == "completed"
    assert [event["type"] for event in trace["events"]][0] == "request"


def test_failing_check_gets_exactly_one_self_heal(tmp_path: Path):
    orchestrator, model, runner, progress = _setup(
        tmp_path,
        ["```python\nvalue = 1\n```", "```python\nvalue = 2\n```"],
        outcomes={"check-build": [_failed("SyntaxError: bad")]},
    )
    result = orchestrator.run_change_plan(_edit_plan())

    assert result.succeeded
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "value = 2\n"
    assert len(model.calls) == 2
    assert "Previous attempt failed" in model.calls[1].payload
    assert "SyntaxError: bad" in model.calls[1].payload
    assert runner.commands.count("check-build") == 2
    assert len(progress.messages("self_heal")) == 1


def test_unapplicable_patch_gets_exactly_one_self_heal(tmp_path: Path):
    stale = IMPLEMENTER_REPLY.replace("-greeting = 'hi'", "-greeting = 'nope'")
    orchestrator, model, _, progress = _setup(tmp_path, [stale, IMPLEMENTER_REPLY])
    result = orchestrator.run_change_plan(_edit_plan())

    assert result.succeeded
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "greeting = 'hello'\n"
    assert len(model.calls) == 2
    assert "Patch could not be applied" in model.calls[1].payload
    assert len(progress.messages("self_heal")) == 1
    assert any("does not match" in text for text in progress.messages("check_failed"))


def test_patch_failing_twice_escalates_to_replanning(tmp_path: Path):
    stale = IMPLEMENTER_REPLY.replace("-greeting = 'hi'", "-greeting = 'nope'")
    orchestrator, model, _, _ = _setup(tmp_path, [stale, stale, NO_RECOVERY])
    result = orchestrator.run_change_plan(_edit_plan())

    assert result.status == "failed"
    assert result.failure_tag == "STEP_FAILURE"
    assert "after one self-healing attempt" in (result.failure or "")
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "greeting = 'hi'\n"
    assert len(model.calls) == 3
    assert '"mode": "recovery"' in model.calls[2].payload


def test_second_failure_escalates_to_replanning(tmp_path: Path):
    orchestrator, model, _, _ = _setup(
        tmp_path,
        ["```python\nvalue = 1\n```", "```python\nvalue = 2\n```", NO_RECOVERY],
        outcomes={"check-build": [_failed("first"), _failed("second")]},
    )
    result = orchestrator.run_change_plan(_edit_plan())

    assert result.status == "failed"
    assert result.failure_tag == "STEP_FAILURE"
    assert result.failure is not None
    assert "after one self-healing attempt" in result.failure
    assert result.final_output.startswith("Task failed: Step 1")
    # two implementer attempts, then one recovery request to the coordinator
    assert len(model.calls) == 3
    assert '"mode": "recovery"' in model.calls[2].payload


def test_denial_skips_self_healing(tmp_path: Path):
    gate = DenyGate()
    orchestrator, model, runner, progress = _setup(
        tmp_path, ["```python\nvalue = 1\n```", NO_RECOVERY], gate=gate
    )
    result = orchestrator.run_change_plan(_edit_plan())

    assert result.status == "failed"
    assert result.failure_tag == "USER_DENIAL"
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "greeting = 'hi'\n"
    assert len(model.calls) == 2
    assert "check-build" not in runner.commands
    assert [change.kind for change in gate.seen] == ["edit"]
    assert progress.messages("denied") == ["edit app.py: not today"]


def test_command_expecting_failure_passes_on_nonzero_exit(tmp_path: Path):
    plan = ChangePlan(actions=[CommandAction(cmd="make broken", expect="fail")])
    orchestrator, model, _, _ = _setup(
        tmp_path, [], outcomes={"make broken": [CommandResult(2, "", "boom", 0.0)]}
    )
    result = orchestrator.run_change_plan(plan)

    assert result.succeeded
    assert model.calls == []
    assert orchestrator.context is not None
    recorded = orchestrator.context.task_state.test_results[0]
    assert (recorded.command, recorded.exit_code, recorded.passed) == ("make broken", 2, False)


def test_command_expecting_pass_fails_after_self_heal(tmp_path: Path):
    plan = ChangePlan(actions=[CommandAction(cmd="make check")])
    orchestrator, _, runner, _ = _setup(
        tmp_path,
        [NO_RECOVERY],
        outcomes={"make check": [_failed("one"), _failed("two")]},
    )
    result = orchestrator.run_change_plan(plan)

    assert result.status == "failed"
    assert runner.commands.count("make check") == 2
    assert "expected pass, got exit code 1" in (result.failure or "")


def test_direct_answer_skips_steps_and_final_checks(tmp_path: Path):
    reply = json.dumps({"category": "direct_answer", "answer": "Use pathlib."})
    orchestrator, model, runner, _ = _setup(tmp_path, [reply])
    result = orchestrator.run("How should I join paths?")

    assert result.succeeded
    assert result.final_output == "Use pathlib."
    assert result.plan.steps == []
    assert result.final_checks == []
    assert "run-tests" not in runner.commands
    assert len(model.calls) == 1


def test_unusable_coordinator_output_fails_run(tmp_path: Path):
    orchestrator, _, _, _ = _setup(tmp_path, ["I am not JSON"])
    result = orchestrator.run("Do something")

    assert result.status == "failed"
    assert result.failure_tag == "VALIDATION"
    assert result.plan.status == "planning"
    assert result.final_output.startswith("Task failed:")


def test_cancel_freezes_context_and_keeps_edits(tmp_path: Path):
    class CancellingGate(ConfirmationGate):
        orchestrator: Orchestrator | None = None

        def confirm(self, change: ProposedChange) -> ConfirmationDecision:
            assert self.orchestrator is not None
            self.orchestrator.cancel()
            return ConfirmationDecision(True)

    gate = CancellingGate()
    orchestrator, _, runner, progress = _setup(
        tmp_path, ["```python\nvalue = 1\n```"], gate=gate
    )
    gate.orchestrator = orchestrator
    result = orchestrator.run_change_plan(_edit_plan())

    assert result.status == "failed"
    assert result.failure_tag == "FATAL"
    assert "cancelled" in (result.failure or "")
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "value = 1\n"
    assert orchestrator.context is not None and orchestrator.context.frozen
    assert result.final_checks == []
    assert "run-tests" not in runner.commands
    assert progress.messages("cancelled") == ["Run cancelled"]


def test_overlapping_runs_are_refused(tmp_path: Path):
    class ReentrantGate(ConfirmationGate):
        orchestrator: Orchestrator | None = None
        errors: list[Exception] = []

        def confirm(self, change: ProposedChange) -> ConfirmationDecision:
            assert self.orchestrator is not None
            try:
                self.orchestrator.run("second request")
            except OrchestratorBusyError as exc:
                self.errors.append(exc)
            return ConfirmationDecision(True)

    gate = ReentrantGate()
    gate.errors = []
    orchestrator, _, _, _ = _setup(tmp_path, ["```python\nvalue = 1\n```"], gate=gate)
    gate.orchestrator = orchestrator
    result = orchestrator.run_change_plan(_edit_plan())

    assert result.succeeded
    assert len(gate.errors) == 1


REJECT_REPLY = json.dumps({"approved": False, "summary": "Greeting is wrong, reject"})
FIX_REPLY = "```python\ngreeting = 'hello there'\n```"


def test_rejected_changes_are_fixed_and_reviewed_again(tmp_path: Path):
    orchestrator, model, _, _ = _setup(
        tmp_path,
        [COORDINATOR_REPLY, PLANNER_REPLY, IMPLEMENTER_REPLY, REJECT_REPLY, FIX_REPLY, REVIEWER_REPLY],
    )
    result = orchestrator.run("Say hello instead of hi")

    assert result.succeeded
    assert result.final_output == "Greeting updated"
    assert (tmp_path / "app.py").read_text(encoding="utf-8") == "greeting = 'hello there'\n"
    assert len(model.calls) == 6
    assert [(step.role.value, step.status) for step in result.plan.steps][-3:] == [
        ("reviewer", "completed"),
        ("implementer", "completed"),
        ("reviewer", "completed"),
    ]
    assert "Greeting is wrong" in model.calls[4].payload


def test_repeated_rejection_fails_instead_of_reporting_success(tmp_path: Path):
    orchestrator, _, _, _ = _setup(
        tmp_path,
        [COORDINATOR_REPLY, PLANNER_REPLY, IMPLEMENTER_REPLY, REJECT_REPLY, FIX_REPLY, REJECT_REPLY],
        max_recoveries=1,
    )
    result = orchestrator.run("Say hello instead of hi")

    assert result.status == "failed"
    assert result.failure_tag == "STEP_FAILURE"
    assert "recovery limit of 1 reached" in (result.failure or "")
    assert result.final_output.startswith("Task failed:")
    assert "Greeting is wrong" in result.final_output


def test_step_runner_outside_a_run_raises(tmp_path: Path):
    orchestrator, _, _, _ = _setup(tmp_path, [])
    with pytest.raises(RuntimeError, match="No run in progress"):
        orchestrator._run_command(CommandAction(cmd="make check"))
