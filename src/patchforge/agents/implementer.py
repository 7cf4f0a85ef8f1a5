"""Implementer: turns one action into a patch or a command to run."""

from __future__ import annotations

from pydantic import BaseModel

from patchforge.agents.base import Agent, render_payload
from patchforge.change_plan import ChangePlan, CommandAction, EditAction
from patchforge.patching import BEGIN_MARKER, PatchError, normalize_path, parse_patch
from patchforge.protocol import AgentResponse, Continue, Question
from patchforge.roles import AgentRole
from patchforge.state import ContextSlice
from patchforge.workflows.plan import StepInput


QUESTION_PREFIX = "QUESTION:"


class ImplementerInputError(ValueError):
    """Raised when a resumed step still has nothing concrete to implement."""


class ImplementerOutput(BaseModel):
    file: str
    patch: str
    explanation: str = ""


def _explanation(text: str, file: str) -> str:
    head = text.split(BEGIN_MARKER, 1)[0].split("```", 1)[0].strip()
    return head or f"Update {file}"


class ImplementerAgent(Agent):
    role = AgentRole.IMPLEMENTER

    def resolve_action(
        self, step_input: StepInput, context: ContextSlice
    ) -> EditAction | CommandAction | None:
        action = step_input.action
        if isinstance(action, (EditAction, CommandAction)):
            return action
        if step_input.kind == "resume":
            return self._action_from_answer(step_input, context)
        if step_input.kind in {"recovery", "recovery_task"} and context.files:
            description = step_input.reason or step_input.description
            return EditAction(file=context.files[0].path, description=description)
        return None

    def _action_from_answer(
        self, step_input: StepInput, context: ContextSlice
    ) -> EditAction | CommandAction:
        answer = step_input.answer
        if isinstance(answer, ChangePlan):
            actionable = answer.actionable()
            if not actionable:
                raise ImplementerInputError("Planner answer contains no actionable change")
            if len(actionable) > 1:
                self.logger.warning(
                    "Planner answer has %s actions; implementing the first", len(actionable)
                )
            return actionable[0]
        if isinstance(answer, str) and answer.strip() and context.files:
            original = step_input.previous_input.description if step_input.previous_input else ""
            return EditAction(
                file=context.files[0].path,
                description=f"{original}\nClarification: {answer.strip()}".strip(),
            )
        raise ImplementerInputError("Resumed without a usable answer")

    def process(self, step_input: StepInput, context: ContextSlice) -> AgentResponse:
        action = self.resolve_action(step_input, context)
        if action is None:
            return AgentResponse(
                output=None,
                next_action=Question(
                    question=(
                        "Which file should change, and how? No concrete action was given for: "
                        f"{step_input.description or context.user_request}"
                    ),
                    target_role=AgentRole.PLANNER,
                ),
            )
        if isinstance(action, CommandAction):
            return AgentResponse(output=action, next_action=Continue(), metadata={"kind": "command"})

        text = self.complete(render_payload(step_input, context, action=action.model_dump()))
        if text.strip().startswith(QUESTION_PREFIX):
            return AgentResponse(
                output=None,
                next_action=Question(
                    question=text.strip()[len(QUESTION_PREFIX) :].strip(),
                    target_role=AgentRole.PLANNER,
                ),
            )
        patch = parse_patch(text, default_path=action.file)
        expected = normalize_path(action.file)
        stray = [path for path in patch.paths if path != expected]
        if stray:
            raise PatchError(f"Patch touches {', '.join(stray)} but the action targets {expected}")
        output = ImplementerOutput(file=expected, patch=text, explanation=_explanation(text, expected))
        return AgentResponse(
            output=output,
            next_action=Continue(),
            metadata={"kind": "edit", "action": action.model_dump()},
        )
