"""Workflow execution engine: drives a WorkflowPlan step by step."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from patchforge.agents.base import Agent
from patchforge.agents.coordinator import CoordinatorDecision, RecoveryDecision
from patchforge.agents.registry import AgentRegistry, MissingAgentError
from patchforge.change_plan import ChangePlan, MessageAction
from patchforge.context import ContextBuilder
from patchforge.protocol import AgentResponse, Complete, Continue, NextAction, Question, Reject
from patchforge.roles import IMPLEMENTATION_CATEGORIES, AgentRole, TaskCategory
from patchforge.state import AgentContext, ContextSlice
from patchforge.util.logging import get_logger
from patchforge.workflows.plan import StepInput, WorkflowPlan, WorkflowStep


StepRunner = Callable[[Agent, WorkflowStep, ContextSlice], AgentResponse]

_PLANNING_KINDS = {"task", "recovery", "recovery_task"}


class WorkflowError(RuntimeError):
    pass


class PlanConstructionError(WorkflowError):
    """Raised when the coordinator yields neither steps nor a direct answer."""


class ReviewRejectedError(WorkflowError):
    """Raised when the reviewer keeps rejecting after the recovery limit."""


@dataclass
class EngineOptions:
    max_steps: int = 20
    timeout_seconds: float = 300
    max_recoveries: int = 2


def run_agent(agent: Agent, step: WorkflowStep, context: ContextSlice) -> AgentResponse:
    return agent.process(step.input, context)


def steps_from_change_plan(change_plan: ChangePlan, kind: str = "task") -> list[WorkflowStep]:
    return [
        WorkflowStep(
            role=AgentRole.IMPLEMENTER,
            input=StepInput(kind=kind, description=getattr(action, "description", ""), action=action),
        )
        for action in change_plan.actionable()
    ]


class WorkflowEngine:
    """Runs one plan sequentially; not safe for concurrent ``execute`` calls."""

    def __init__(
        self,
        registry: AgentRegistry,
        context: AgentContext,
        context_builder: ContextBuilder | None = None,
        step_runner: StepRunner = run_agent,
        options: EngineOptions | None = None,
        cancel_event: threading.Event | None = None,
        on_step_completed: Callable[[WorkflowStep], None] | None = None,
        on_plan_updated: Callable[[WorkflowPlan], None] | None = None,
        on_message: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.context = context
        self.context_builder = context_builder or ContextBuilder()
        self.step_runner = step_runner
        self.options = options or EngineOptions()
        self.cancel_event = cancel_event or threading.Event()
        self.on_step_completed = on_step_completed
        self.on_plan_updated = on_plan_updated
        self.on_message = on_message
        self.clock = clock
        self.plan = WorkflowPlan()
        self.category: TaskCategory | None = None
        self.steps_executed = 0
        self.recoveries = 0
        self.last_error: Exception | None = None
        self.logger = get_logger("patchforge.engine")

    # plan construction

    def create_plan(self) -> WorkflowPlan:
        coordinator = self.registry.get(AgentRole.COORDINATOR)
        step_input = StepInput(kind="task", description=self.context.user_request)
        context_slice = self.context_builder.build(AgentRole.COORDINATOR, self.context, step_input)
        try:
            response = coordinator.process(step_input, context_slice)
        except Exception as exc:
            raise PlanConstructionError(f"Coordinator could not build a plan: {exc}") from exc

        decision = response.output if isinstance(response.output, CoordinatorDecision) else None
        if decision is not None:
            self._set_category(decision.category)
        if isinstance(response.next_action, Complete):
            self.plan.status = "completed"
            self.plan.final_output = response.next_action.final_output
            self.plan.current_step_index = 0
            self._plan_updated()
            return self.plan
        if decision is None or not decision.steps:
            raise PlanConstructionError("Coordinator proposed no usable steps")
        self.plan.steps = [proposed.to_step() for proposed in decision.steps]
        self.plan.current_step_index = 0
        self.plan.status = "executing"
        self.logger.info("Created plan with %s steps", len(self.plan.steps))
        self._plan_updated()
        return self.plan

    def load_change_plan(self, change_plan: ChangePlan) -> WorkflowPlan:
        """Build the plan directly from a validated ChangePlan."""
        self._set_category(TaskCategory.IMPLEMENTATION)
        self._emit_messages(change_plan)
        self.plan.steps = steps_from_change_plan(change_plan)
        self.plan.current_step_index = 0
        self.plan.status = "executing"
        self._plan_updated()
        return self.plan

    def _set_category(self, category: TaskCategory) -> None:
        self.category = category
        if not self.context.frozen:
            self.context.task_state.category = category.value

    def _emit_messages(self, change_plan: ChangePlan) -> None:
        for action in change_plan.actions:
            if isinstance(action, MessageAction) and self.on_message is not None:
                self.on_message(action.content)

    # execution

    def execute(self) -> WorkflowPlan:
        plan = self.plan
        started = self.clock()
        while plan.status == "executing":
            if self.cancel_event.is_set():
                self._fail("Workflow cancelled")
                break
            if plan.current_step_index >= len(plan.steps):
                plan.status = "completed"
                self.logger.info("Workflow completed")
                break
            if self.steps_executed >= self.options.max_steps:
                self._fail(f"Exceeded maximum of {self.options.max_steps} steps")
                break
            if self.clock() - started >= self.options.timeout_seconds:
                self._fail(f"Workflow timed out after {self.options.timeout_seconds}s")
                break
            step = plan.steps[plan.current_step_index]
            if step.status != "pending":
                plan.current_step_index += 1
                continue
            self._run_step(plan.current_step_index, step)
        self._plan_updated()
        return plan

    def _run_step(self, index: int, step: WorkflowStep) -> None:
        step.status = "in_progress"
        self.steps_executed += 1
        try:
            agent = self.registry.get(step.role)
        except MissingAgentError as exc:
            step.status = "failed"
            step.error = str(exc)
            self._fail(f"Step {index + 1} ({step.describe()}) failed: {exc}")
            self._plan_updated()
            raise
        self.logger.info("Step %s: %s", index + 1, step.describe())
        try:
            context_slice = self.context_builder.build(step.role, self.context, step.input)
            response = self.step_runner(agent, step, context_slice)
        except Exception as exc:
            step.status = "failed"
            step.error = str(exc)
            self.last_error = exc
            self.logger.warning("Step %s failed: %s", index + 1, exc)
            if self.on_step_completed is not None:
                self.on_step_completed(step)
            self._recover(index, step, exc)
            self._plan_updated()
            return

        step.output = response.output
        step.status = "completed"
        if self.on_step_completed is not None:
            self.on_step_completed(step)
        self._attach_answer(index, step)
        if (
            step.role == AgentRole.PLANNER
            and isinstance(step.output, ChangePlan)
            and step.input.kind in _PLANNING_KINDS
        ):
            self._expand_change_plan(index, step.output)
        self._advance(index, step, response.next_action)
        self._plan_updated()

    def _attach_answer(self, index: int, step: WorkflowStep) -> None:
        if step.input.kind != "question":
            return
        for candidate in self.plan.steps[index + 1 :]:
            if (
                candidate.status == "pending"
                and candidate.input.kind == "resume"
                and candidate.role == step.input.asked_by
            ):
                candidate.input.answer = step.output
                return

    def _expand_change_plan(self, index: int, change_plan: ChangePlan) -> None:
        self._emit_messages(change_plan)
        # placeholder implementer steps are superseded by concrete actions
        for candidate in self.plan.steps[index + 1 :]:
            if (
                candidate.role == AgentRole.IMPLEMENTER
                and candidate.status == "pending"
                and candidate.input.action is None
                and candidate.input.kind in _PLANNING_KINDS
            ):
                candidate.status = "skipped"
        new_steps = steps_from_change_plan(change_plan)
        self.plan.insert_steps(index + 1, new_steps)
        self.logger.info("Expanded change plan into %s implementer steps", len(new_steps))

    def _advance(self, index: int, step: WorkflowStep, action: NextAction) -> None:
        plan = self.plan
        category = self.category
        if (
            isinstance(action, Complete)
            and step.role != AgentRole.REVIEWER
            and category is not None
            and category in IMPLEMENTATION_CATEGORIES
        ):
            self.logger.warning(
                "Ignoring completion from %s; only the reviewer may finish %s tasks",
                step.role.value,
                category.value,
            )
            action = Continue()

        if isinstance(action, Continue):
            if action.next_role is None:
                plan.current_step_index = index + 1
                return
            target = plan.pending_index_of(action.next_role, index)
            if target is None:
                self.logger.warning(
                    "No pending %s step ahead; advancing to the next step", action.next_role.value
                )
                plan.current_step_index = index + 1
                return
            plan.skip_pending(index + 1, target)
            plan.current_step_index = target
        elif isinstance(action, Reject):
            self.logger.info("%s rejected: %s", step.role.value, action.reason)
            recovery = WorkflowStep(
                role=action.suggested_role,
                input=StepInput(
                    kind="recovery",
                    description=action.reason,
                    reason=action.reason,
                    previous_role=step.role,
                    previous_input=step.input,
                ),
            )
            inserted = [recovery]
            if self._needs_review(step, action):
                # a rejected implementation is only finished by a later approval
                if self.recoveries >= self.options.max_recoveries:
                    self.last_error = ReviewRejectedError(action.reason)
                    self._fail(
                        f"Step {index + 1} ({step.describe()}) rejected the changes: {action.reason} "
                        f"(recovery limit of {self.options.max_recoveries} reached)"
                    )
                    return
                self.recoveries += 1
                inserted.append(
                    WorkflowStep(
                        role=AgentRole.REVIEWER,
                        input=StepInput(description=f"Re-review after fixing: {action.reason}"),
                    )
                )
            plan.insert_steps(index + 1, inserted)
            plan.current_step_index = index + 1
        elif isinstance(action, Question):
            self.logger.info("%s asks %s: %s", step.role.value, action.target_role.value, action.question)
            answer_step = WorkflowStep(
                role=action.target_role,
                input=StepInput(
                    kind="question",
                    description=action.question,
                    question=action.question,
                    asked_by=step.role,
                ),
            )
            resume_step = WorkflowStep(
                role=step.role,
                input=StepInput(
                    kind="resume",
                    description=step.input.description,
                    question=action.question,
                    previous_input=step.input,
                ),
            )
            plan.insert_steps(index + 1, [answer_step, resume_step])
            plan.current_step_index = index + 1
        elif isinstance(action, Complete):
            plan.skip_pending(index + 1)
            plan.current_step_index = len(plan.steps)
            plan.status = "completed"
            plan.final_output = action.final_output

    def _needs_review(self, step: WorkflowStep, action: Reject) -> bool:
        return (
            step.role == AgentRole.REVIEWER
            and action.suggested_role != AgentRole.REVIEWER
            and self.category is not None
            and self.category in IMPLEMENTATION_CATEGORIES
        )

    def _recover(self, index: int, step: WorkflowStep, error: Exception) -> None:
        failure = f"Step {index + 1} ({step.describe()}) failed: {error}"
        if self.cancel_event.is_set():
            self._fail(f"Workflow cancelled during step {index + 1}")
            return
        if self.recoveries >= self.options.max_recoveries:
            self._fail(f"{failure} (recovery limit of {self.options.max_recoveries} reached)")
            return
        if not self.registry.has(AgentRole.COORDINATOR):
            self._fail(failure)
            return
        self.recoveries += 1
        request = StepInput(
            kind="recovery",
            description=step.describe(),
            error=str(error),
            previous_role=step.role,
            previous_input=step.input,
        )
        try:
            coordinator = self.registry.get(AgentRole.COORDINATOR)
            context_slice = self.context_builder.build(AgentRole.COORDINATOR, self.context, request)
            response = coordinator.process(request, context_slice)
        except Exception as exc:
            self._fail(f"{failure}; recovery failed: {exc}")
            return
        decision = response.output if isinstance(response.output, RecoveryDecision) else None
        if decision is None or not decision.recovery_steps:
            self._fail(f"{failure}; no recovery plan available")
            return
        self.plan.skip_pending(index + 1)
        recovery_steps = [proposed.to_step("recovery_task") for proposed in decision.recovery_steps]
        self.plan.insert_steps(index + 1, recovery_steps)
        self.plan.current_step_index = index + 1
        self.logger.info("Recovering with %s new steps", len(recovery_steps))

    def _fail(self, message: str) -> None:
        self.plan.status = "failed"
        self.plan.failure = message
        self.logger.warning("Workflow failed: %s", message)

    def _plan_updated(self) -> None:
        if self.on_plan_updated is not None:
            self.on_plan_updated(self.plan)
