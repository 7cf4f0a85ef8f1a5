"""Coordinator: classifies requests, proposes steps and recovery plans."""

from __future__ import annotations

from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from patchforge.agents.base import Agent, render_payload
from patchforge.change_plan import CommandAction, EditAction
from patchforge.protocol import AgentResponse, Complete, Continue
from patchforge.roles import DEFAULT_SEQUENCES, AgentRole, TaskCategory
from patchforge.state import ContextSlice
from patchforge.util.json_extract import JsonPayloadError, parse_json_object
from patchforge.workflows.plan import StepInput, WorkflowStep


_M = TypeVar("_M", bound=BaseModel)


class CoordinatorOutputError(ValueError):
    """Raised when coordinator output is not a valid decision."""


class ProposedStep(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: AgentRole
    action: str = ""
    file: str | None = None
    cmd: str | None = None

    def to_step(self, kind: str = "task") -> WorkflowStep:
        action = None
        if self.role == AgentRole.IMPLEMENTER:
            if self.cmd:
                action = CommandAction(cmd=self.cmd)
            elif self.file:
                action = EditAction(file=self.file, description=self.action or f"Update {self.file}")
        return WorkflowStep(
            role=self.role,
            input=StepInput(kind=kind, description=self.action, action=action),
        )


class CoordinatorDecision(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: TaskCategory
    steps: list[ProposedStep] = Field(default_factory=list)
    answer: str | None = None


class RecoveryDecision(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recovery_steps: list[ProposedStep] = Field(default_factory=list)


def _decode(text: str, model: type[_M]) -> _M:
    try:
        payload = parse_json_object(text)
        return model.model_validate(payload)
    except (JsonPayloadError, ValidationError) as exc:
        raise CoordinatorOutputError(f"Malformed coordinator output: {exc}") from exc


class CoordinatorAgent(Agent):
    role = AgentRole.COORDINATOR

    def process(self, step_input: StepInput, context: ContextSlice) -> AgentResponse:
        if step_input.error is not None:
            return self._recover(step_input, context)
        text = self.complete(render_payload(step_input, context))
        decision = _decode(text, CoordinatorDecision)
        if decision.category == TaskCategory.DIRECT_ANSWER and decision.answer:
            return AgentResponse(
                output=decision,
                next_action=Complete(final_output=decision.answer),
                metadata={"category": decision.category.value},
            )
        if not decision.steps:
            description = context.user_request
            decision.steps = [
                ProposedStep(role=role, action=description)
                for role in DEFAULT_SEQUENCES[decision.category]
            ]
        self.logger.info(
            "Classified request as %s with %s steps", decision.category.value, len(decision.steps)
        )
        return AgentResponse(
            output=decision,
            next_action=Continue(),
            metadata={"category": decision.category.value},
        )

    def _recover(self, step_input: StepInput, context: ContextSlice) -> AgentResponse:
        text = self.complete(render_payload(step_input, context, mode="recovery"))
        decision = _decode(text, RecoveryDecision)
        self.logger.info("Recovery proposal with %s steps", len(decision.recovery_steps))
        return AgentResponse(output=decision, next_action=Continue())
