"""Agent response protocol: what a role returns and what happens next."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from patchforge.roles import AgentRole


class Continue(BaseModel):
    type: Literal["continue"] = "continue"
    next_role: AgentRole | None = None


class Reject(BaseModel):
    type: Literal["reject"] = "reject"
    reason: str
    suggested_role: AgentRole


class Complete(BaseModel):
    type: Literal["complete"] = "complete"
    final_output: str


class Question(BaseModel):
    type: Literal["question"] = "question"
    question: str
    target_role: AgentRole


NextAction = Annotated[Union[Continue, Reject, Complete, Question], Field(discriminator="type")]


class AgentResponse(BaseModel):
    output: Any = None
    next_action: NextAction = Field(default_factory=Continue)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def output_text(self) -> str:
        """Best-effort human-readable rendering of ``output``."""
        output = self.output
        if output is None:
            return ""
        if isinstance(output, str):
            return output
        if isinstance(output, BaseModel):
            for attr in ("summary", "explanation", "answer"):
                value = getattr(output, attr, None)
                if isinstance(value, str) and value:
                    return value
            return output.model_dump_json()
        return str(output)
