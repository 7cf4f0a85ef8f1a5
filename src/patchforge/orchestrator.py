"""Orchestrator: owns one run's context, engine and telemetry.

The orchestrator substitutes its own step runner into the workflow engine. An
implementer's output is gated, applied and health-checked here. A patch that
does not apply, a failed command or a failing check gets exactly one
self-healing attempt before the step fails and the engine falls back to
replanning. Denials are never healed.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from patchforge.agents.base import Agent
from patchforge.agents.implementer import ImplementerOutput
from patchforge.agents.registry import AgentRegistry, MissingAgentError
from patchforge.agents.reviewer import ReviewResult
from patchforge.change_plan import ChangePlan, CommandAction, EditAction, validate_action
from patchforge.config import Settings
from patchforge.context import ContextBuilder
from patchforge.failures import FailureEvent, StepFailedError, classify_error
from patchforge.health import HealthChecker, HealthCheckResult
from patchforge.patching import PatchError, apply_patch, parse_patch
from patchforge.protocol import AgentResponse
from patchforge.repo import collect_repo_snapshot
from patchforge.roles import AgentRole
from patchforge.safety.policy import AutoApproveGate, ConfirmationGate, ProposedChange
from patchforge.safety.sandbox import CommandRunner
from patchforge.state import AgentContext, ContextSlice, TestResult
from patchforge.telemetry import TelemetryCollector, TelemetrySummary
from patchforge.trace import TraceRecorder
from patchforge.util.logging import get_logger, redact
from patchforge.util.progress import ProgressEvent, ProgressSink
from patchforge.workflows.engine import EngineOptions, PlanConstructionError, WorkflowEngine
from patchforge.workflows.plan import WorkflowPlan, WorkflowStep


DEFAULT_SUCCESS_OUTPUT = "Task completed successfully."


class OrchestratorBusyError(RuntimeError):
    """Raised when a run is started while another is in progress."""


@dataclass
class RunResult:
    status: str
    final_output: str
    plan: WorkflowPlan
    failure: str | None = None
    failure_tag: str | None = None
    telemetry: TelemetrySummary | None = None
    final_checks: list[HealthCheckResult] = field(default_factory=list)
    trace_path: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


def render_output(output: Any) -> str:
    """Human-readable text for a step output, used for history and reports."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, ImplementerOutput):
        return f"{output.explanation}\n{output.patch}".strip()
    if isinstance(output, ChangePlan):
        return output.model_dump_json()
    if isinstance(output, CommandAction):
        return f"$ {output.cmd}"
    summary = getattr(output, "summary", None)
    if isinstance(summary, str) and summary:
        return summary
    if hasattr(output, "model_dump_json"):
        return output.model_dump_json()
    return str(output)


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        registry: AgentRegistry,
        runner: CommandRunner,
        health: HealthChecker,
        collector: TelemetryCollector,
        gate: ConfirmationGate | None = None,
        context_builder: ContextBuilder | None = None,
        progress: ProgressSink | None = None,
        cancel_event: threading.Event | None = None,
        repo_root: str | Path | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.runner = runner
        self.health = health
        self.collector = collector
        self.gate = gate or AutoApproveGate()
        self.context_builder = context_builder or ContextBuilder(
            planner_history_window=settings.planner_history_window,
            verifier_history_window=settings.verifier_history_window,
        )
        self.progress = progress
        self.cancel_event = cancel_event or health.cancel_event or threading.Event()
        self.repo_root = Path(repo_root or settings.repo_root)
        self.context: AgentContext | None = None
        self.engine: WorkflowEngine | None = None
        self.trace: TraceRecorder | None = None
        self._lock = threading.Lock()
        self.logger = get_logger("patchforge.orchestrator")

    # public API

    def run(self, request: str) -> RunResult:
        return self._guarded(request, None)

    def run_change_plan(self, change_plan: ChangePlan, request: str | None = None) -> RunResult:
        return self._guarded(request or "Apply the provided change plan", change_plan)

    def cancel(self) -> None:
        """Stop the current run; applied edits remain and the context is frozen."""
        self.cancel_event.set()
        if self.context is not None:
            self.context.freeze()
        self._emit("cancelled", "Run cancelled")

    def terminate(self) -> None:
        self.cancel()
        self.registry.clear()

    # run lifecycle

    def _guarded(self, request: str, change_plan: ChangePlan | None) -> RunResult:
        if not self._lock.acquire(blocking=False):
            raise OrchestratorBusyError("A run is already in progress")
        try:
            return self._run(request, change_plan)
        finally:
            self._lock.release()

    def _run(self, request: str, change_plan: ChangePlan | None) -> RunResult:
        self.cancel_event.clear()
        self.context_builder.cache.clear()
        run_id = uuid.uuid4().hex[:12]
        snapshot = collect_repo_snapshot(self.repo_root, self.runner, self.settings.max_repo_files)
        context = AgentContext(user_request=request, repo=snapshot)
        context.add_message("user", request)
        self.context = context
        self.collector.start(run_id)
        self.trace = (
            TraceRecorder(run_id, self.settings.workspace_dir) if self.settings.write_traces else None
        )
        if self.trace is not None:
            self.trace.record_request(request)

        engine = WorkflowEngine(
            registry=self.registry,
            context=context,
            context_builder=self.context_builder,
            step_runner=self._run_step,
            options=EngineOptions(
                max_steps=self.settings.max_steps,
                timeout_seconds=self.settings.workflow_timeout_seconds,
                max_recoveries=self.settings.max_recoveries,
            ),
            cancel_event=self.cancel_event,
            on_step_completed=self._on_step_completed,
            on_plan_updated=self._on_plan_updated,
            on_message=lambda text: self._emit("message", text),
        )
        self.engine = engine
        self._emit("run_started", request, run_id=run_id)

        failure: str | None = None
        failure_tag: str | None = None
        try:
            if change_plan is not None:
                engine.load_change_plan(change_plan)
            else:
                engine.create_plan()
                self._record_plan(engine.plan)
            if engine.plan.status == "executing":
                engine.execute()
        except PlanConstructionError as exc:
            failure = str(exc)
            failure_tag = classify_error(exc.__cause__ or exc).value
        except MissingAgentError as exc:
            failure = engine.plan.failure or str(exc)
            failure_tag = classify_error(exc).value

        plan = engine.plan
        if failure is None and plan.status == "failed":
            failure = plan.failure
            failure_tag = self._failure_tag(engine)
        status = "failed" if failure is not None else plan.status
        if failure is not None and self.trace is not None:
            self.trace.record_failure(FailureEvent(tag=failure_tag or "FATAL", reason=failure))

        final_checks: list[HealthCheckResult] = []
        if plan.steps and not self.cancel_event.is_set():
            final_checks = self._final_checks()

        summary = self.collector.summary(self.settings.baseline_model)
        self._emit("telemetry", summary.message(), **summary.to_dict())
        self.collector.flush()

        final_output = self._final_output(plan, failure)
        trace_path = None
        if self.trace is not None:
            trace_path = self.trace.finalize(
                {
                    "status": status,
                    "steps": len(plan.steps),
                    "telemetry": summary.to_dict(),
                    "final_checks": [check.passed for check in final_checks],
                }
            )
        if status == "completed":
            self._emit("run_completed", final_output)
        else:
            self._emit("run_failed", final_output)
        return RunResult(
            status=status,
            final_output=final_output,
            plan=plan,
            failure=failure,
            failure_tag=failure_tag,
            telemetry=summary,
            final_checks=final_checks,
            trace_path=trace_path,
        )

    def _failure_tag(self, engine: WorkflowEngine) -> str:
        if self.cancel_event.is_set():
            return "FATAL"
        if engine.last_error is not None:
            return classify_error(engine.last_error).value
        return "FATAL"

    def _final_checks(self) -> list[HealthCheckResult]:
        results = self.health.final_checks()
        for check in results:
            if check.passed:
                self._emit("final_check", f"{check.name}: {check.message or 'passed'}")
            else:
                self._emit("check_failed", check.failure_text(), check=check.name)
        return results

    def _final_output(self, plan: WorkflowPlan, failure: str | None) -> str:
        if failure is not None:
            return f"Task failed: {failure}"
        if plan.final_output:
            return plan.final_output
        for step in reversed(plan.steps):
            output = step.output
            if step.status == "completed" and isinstance(output, ReviewResult) and output.approved:
                if output.summary:
                    return output.summary
        for step in reversed(plan.steps):
            if step.status == "completed":
                text = render_output(step.output)
                if text:
                    return text
        return DEFAULT_SUCCESS_OUTPUT

    # engine callbacks

    def _record_plan(self, plan: WorkflowPlan) -> None:
        if not plan.steps or self.context is None or self.context.frozen:
            return
        self.context.add_message("system", plan.to_summary())
        self._emit("plan_created", plan.to_summary(), steps=len(plan.steps))

    def _on_plan_updated(self, plan: WorkflowPlan) -> None:
        context = self.context
        if context is None or context.frozen:
            return
        context.task_state.status = plan.status
        context.task_state.current_step = plan.current_step_index
        context.task_state.total_steps = len(plan.steps)

    def _on_step_completed(self, step: WorkflowStep) -> None:
        steps = self.engine.plan.steps if self.engine is not None else []
        index = next((i for i, candidate in enumerate(steps) if candidate is step), -1)
        if self.trace is not None:
            self.trace.record_step(index, step)
        if step.status == "failed":
            self._emit("step_failed", f"{step.describe()}: {step.error}", index=index)
        else:
            self._emit("step_completed", step.describe(), index=index)
        context = self.context
        if context is None or context.frozen:
            return
        if step.status == "failed":
            context.record_error(f"{step.describe()}: {step.error}")
            context.add_message("system", f"Step failed: {step.describe()}: {step.error}")
            return
        text = render_output(step.output)
        if text:
            context.add_message(step.role.value, text, kind=step.input.kind)

    # step runner

    def _run_step(self, agent: Agent, step: WorkflowStep, context_slice: ContextSlice) -> AgentResponse:
        response = agent.process(step.input, context_slice)
        if step.role == AgentRole.IMPLEMENTER:
            failure = self._attempt(response)
            if failure is not None:
                response = self._self_heal(agent, step, response, failure)
        elif step.role == AgentRole.VERIFIER:
            for result in response.metadata.get("test_results", []):
                if isinstance(result, TestResult) and self.context is not None:
                    self.context.record_test_result(result)
        return response

    def _attempt(self, response: AgentResponse) -> str | None:
        """Apply one implementer output; returns the failure text if it needs healing."""
        try:
            check = self._execute_output(response)
        except PatchError as exc:
            self._emit("check_failed", str(exc), check="apply")
            return f"Patch could not be applied: {exc}"
        except StepFailedError as exc:
            if exc.denied or self.cancel_event.is_set():
                raise
            return str(exc)
        if check is None or check.passed:
            return None
        return check.failure_text()

    def _execute_output(self, response: AgentResponse) -> HealthCheckResult | None:
        output = response.output
        if isinstance(output, ImplementerOutput):
            self._confirm(ProposedChange("edit", output.file, output.explanation))
            return self._apply_edit(output)
        if isinstance(output, CommandAction):
            self._confirm(ProposedChange("command", output.cmd))
            return self._run_command(output)
        return None

    def _confirm(self, change: ProposedChange) -> None:
        decision = self.gate.confirm(change)
        if not decision.approved:
            reason = decision.reason or "denied"
            self._emit("denied", f"{change.kind} {change.target}: {reason}")
            raise StepFailedError(f"Confirmation denied for {change.kind} {change.target}: {reason}", denied=True)

    def _require_context(self) -> AgentContext:
        if self.context is None:
            raise RuntimeError("No run in progress")
        return self.context

    def _apply_edit(self, output: ImplementerOutput) -> HealthCheckResult:
        context = self._require_context()
        patch = parse_patch(output.patch, default_path=output.file)
        for change in apply_patch(self.repo_root, patch):
            context.record_file_change(change.path, change.diff, created=change.created)
            self._emit("edit_applied", change.path, created=change.created)
        check = self.health.check_edit(output.file)
        if not check.passed:
            self._emit("check_failed", check.failure_text(), check=check.name)
        return check

    def _run_command(self, action: CommandAction) -> HealthCheckResult:
        context = self._require_context()
        result = self.runner.exec(
            action.cmd,
            timeout=self.settings.command_timeout_seconds,
            cancel_event=self.cancel_event,
        )
        if result.cancelled:
            raise StepFailedError(f"Command cancelled: {action.cmd}")
        context.record_test_result(
            TestResult(
                command=action.cmd,
                exit_code=result.exit_code,
                passed=result.exit_code == 0,
                output=result.output[-4000:],
            )
        )
        self._emit("command_finished", f"{action.cmd} exited with {result.exit_code}", exit_code=result.exit_code)
        check = self.health.check_command(action, result)
        if not check.passed:
            self._emit("check_failed", check.failure_text(), check=check.name)
        return check

    def _self_heal(
        self,
        agent: Agent,
        step: WorkflowStep,
        response: AgentResponse,
        failure_text: str,
    ) -> AgentResponse:
        context = self._require_context()
        first_line = failure_text.split("\n", 1)[0]
        self._emit("self_heal", f"Retrying {step.describe()} after: {first_line}")
        action = self._resolved_action(response)
        if isinstance(action, EditAction):
            hints = f"{action.hints}\n" if action.hints else ""
            action = action.model_copy(update={"hints": f"{hints}Previous attempt failed:\n{failure_text}"})
        heal_input = step.input.model_copy(update={"action": action, "error": failure_text})
        heal_slice = self.context_builder.build(step.role, context, heal_input)
        healed = agent.process(heal_input, heal_slice)
        try:
            second = self._execute_output(healed)
        except PatchError as exc:
            raise StepFailedError(f"Patch could not be applied: {exc}\n(after one self-healing attempt)") from exc
        if second is None:
            raise StepFailedError(f"{failure_text}\nSelf-healing produced no change")
        if not second.passed:
            raise StepFailedError(f"{second.failure_text()}\n(after one self-healing attempt)")
        return healed

    def _resolved_action(self, response: AgentResponse) -> EditAction | CommandAction | None:
        if isinstance(response.output, CommandAction):
            return response.output
        raw = response.metadata.get("action")
        if raw is None:
            return None
        action = validate_action(raw)
        return action if isinstance(action, (EditAction, CommandAction)) else None

    # progress

    def _emit(self, kind: str, message: str, **data: Any) -> None:
        text = redact(message)
        self.logger.debug("%s: %s", kind, text)
        if self.progress is None:
            return
        safe = json.loads(json.dumps(data, default=str)) if data else {}
        self.progress.emit(ProgressEvent(kind=kind, message=text, data=safe))
