"""Planner: turns the request into a strict ChangePlan."""

from __future__ import annotations

from patchforge.agents.base import Agent, render_payload
from patchforge.change_plan import parse_change_plan
from patchforge.protocol import AgentResponse, Continue
from patchforge.roles import AgentRole
from patchforge.state import ContextSlice
from patchforge.workflows.plan import StepInput


class PlannerAgent(Agent):
    role = AgentRole.PLANNER

    def process(self, step_input: StepInput, context: ContextSlice) -> AgentResponse:
        text = self.complete(render_payload(step_input, context))
        # prose or any invalid action raises PlanValidationError
        plan = parse_change_plan(text)
        self.logger.info("Planned %s actions", len(plan.actions))
        return AgentResponse(
            output=plan,
            next_action=Continue(),
            metadata={"actions": len(plan.actions)},
        )
