"""Reviewer: holistic verdict over the accumulated changes."""

from __future__ import annotations

from pydantic import BaseModel, Field, ValidationError

from patchforge.agents.base import Agent, render_payload
from patchforge.protocol import AgentResponse, Complete, Reject
from patchforge.roles import AgentRole
from patchforge.state import ContextSlice
from patchforge.util.json_extract import JsonPayloadError, parse_json_object
from patchforge.workflows.plan import StepInput


class ReviewVerdictError(ValueError):
    """Raised when the reviewer output lacks an explicit approved/rejected verdict."""


class ReviewResult(BaseModel):
    approved: bool
    summary: str = ""
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


def parse_review(text: str) -> ReviewResult:
    try:
        payload = parse_json_object(text, allow_prose=True)
    except JsonPayloadError as exc:
        raise ReviewVerdictError(f"Review output has no verdict object: {exc}") from exc
    # "yes", 1 and similar are ambiguous; only a JSON boolean counts
    if not isinstance(payload.get("approved"), bool):
        raise ReviewVerdictError("Review output must contain a boolean 'approved' field")
    try:
        return ReviewResult.model_validate(payload)
    except ValidationError as exc:
        raise ReviewVerdictError(f"Malformed review output: {exc}") from exc


class ReviewerAgent(Agent):
    role = AgentRole.REVIEWER

    def process(self, step_input: StepInput, context: ContextSlice) -> AgentResponse:
        diffs = context.task_state.diffs if context.task_state is not None else []
        text = self.complete(render_payload(step_input, context, diffs=diffs))
        review = parse_review(text)
        if review.approved:
            summary = review.summary or "Changes approved."
            return AgentResponse(output=review, next_action=Complete(final_output=summary))
        reason = review.summary or "; ".join(review.issues) or "Changes rejected by reviewer"
        if review.issues and review.summary:
            reason = f"{review.summary}\nIssues:\n" + "\n".join(f"- {issue}" for issue in review.issues)
        return AgentResponse(
            output=review,
            next_action=Reject(reason=reason, suggested_role=AgentRole.IMPLEMENTER),
        )
