"""Workflow plan: the ordered, mutable list of role steps for one request."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from patchforge.change_plan import Action, describe_action
from patchforge.roles import AgentRole


StepStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
PlanStatus = Literal["planning", "executing", "completed", "failed"]
StepKind = Literal["task", "recovery", "recovery_task", "question", "resume"]


class StepInput(BaseModel):
    kind: StepKind = "task"
    description: str = ""
    action: Optional[Action] = None
    reason: str | None = None
    previous_role: AgentRole | None = None
    previous_input: Optional["StepInput"] = None
    question: str | None = None
    asked_by: AgentRole | None = None
    answer: Any = None
    error: str | None = None


class WorkflowStep(BaseModel):
    role: AgentRole
    input: StepInput = Field(default_factory=StepInput)
    output: Any = None
    status: StepStatus = "pending"
    error: str | None = None

    def describe(self) -> str:
        if self.input.action is not None:
            return f"{self.role.value}: {describe_action(self.input.action)}"
        text = self.input.description or self.input.question or self.input.reason or ""
        return f"{self.role.value}: {text[:80]}" if text else self.role.value


class WorkflowPlan(BaseModel):
    steps: list[WorkflowStep] = Field(default_factory=list)
    current_step_index: int = 0
    status: PlanStatus = "planning"
    final_output: str | None = None
    failure: str | None = None

    @property
    def current_step(self) -> WorkflowStep | None:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def insert_steps(self, index: int, steps: list[WorkflowStep]) -> None:
        self.steps[index:index] = steps

    def skip_pending(self, start: int, stop: int | None = None) -> int:
        """Mark pending steps in ``[start, stop)`` as skipped; returns how many."""
        end = len(self.steps) if stop is None else min(stop, len(self.steps))
        skipped = 0
        for step in self.steps[start:end]:
            if step.status == "pending":
                step.status = "skipped"
                skipped += 1
        return skipped

    def pending_index_of(self, role: AgentRole, after: int) -> int | None:
        for index in range(after + 1, len(self.steps)):
            step = self.steps[index]
            if step.role == role and step.status == "pending":
                return index
        return None

    def count(self, status: StepStatus) -> int:
        return sum(1 for step in self.steps if step.status == status)

    def to_summary(self) -> str:
        lines = [f"Plan status: {self.status} ({len(self.steps)} steps)"]
        for index, step in enumerate(self.steps):
            marker = ">" if index == self.current_step_index and self.status == "executing" else " "
            line = f"{marker} {index + 1}. [{step.status}] {step.describe()}"
            if step.error:
                line += f" (error: {step.error})"
            lines.append(line)
        if self.failure:
            lines.append(f"Failure: {self.failure}")
        return "\n".join(lines)


StepInput.model_rebuild()
