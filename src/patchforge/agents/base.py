"""Agent interface and shared dependencies."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from patchforge.completion import CompletionClient
from patchforge.config import Settings
from patchforge.health import HealthChecker
from patchforge.prompts import DEFAULT_PROMPTS
from patchforge.protocol import AgentResponse
from patchforge.roles import AgentRole
from patchforge.safety.sandbox import CommandRunner
from patchforge.state import ContextSlice
from patchforge.util.logging import get_logger
from patchforge.workflows.plan import StepInput


@dataclass
class AgentDeps:
    client: CompletionClient
    settings: Settings = field(default_factory=Settings)
    runner: CommandRunner | None = None
    health: HealthChecker | None = None
    prompts: dict[AgentRole, str] = field(default_factory=lambda: dict(DEFAULT_PROMPTS))


class Agent(ABC):
    """One role in the pipeline. Agents never call each other."""

    role: AgentRole

    def __init__(self, deps: AgentDeps) -> None:
        self.deps = deps
        self.client = deps.client
        self.logger = get_logger(f"patchforge.agents.{self.role.value}")

    @property
    def model(self) -> str:
        return self.client.model_for(self.role)

    @property
    def prompt(self) -> str:
        return self.deps.prompts.get(self.role, DEFAULT_PROMPTS[self.role])

    @abstractmethod
    def process(self, step_input: StepInput, context: ContextSlice) -> AgentResponse:
        raise NotImplementedError

    def complete(self, payload: str) -> str:
        return self.client.invoke(self.role, self.prompt, payload)


def describe_input(step_input: StepInput) -> dict[str, Any]:
    data: dict[str, Any] = {"kind": step_input.kind, "description": step_input.description}
    if step_input.action is not None:
        data["action"] = step_input.action.model_dump()
    for key in ("reason", "question", "error"):
        value = getattr(step_input, key)
        if value:
            data[key] = value
    if step_input.previous_role is not None:
        data["previous_role"] = step_input.previous_role.value
    if step_input.answer is not None:
        answer = step_input.answer
        data["answer"] = answer.model_dump() if hasattr(answer, "model_dump") else str(answer)
    return data


def render_payload(step_input: StepInput, context: ContextSlice, **extra: Any) -> str:
    """Serialize the step and the role's context slice into the user message."""
    payload: dict[str, Any] = {
        "request": context.user_request,
        "step": describe_input(step_input),
    }
    if context.history:
        payload["history"] = [{"role": m.role, "content": m.content} for m in context.history]
    if context.repo_overview:
        payload["repository"] = context.repo_overview
    if context.file_list:
        payload["files"] = context.file_list
    if context.task_state is not None:
        state = context.task_state
        payload["task_state"] = {
            "status": state.status,
            "category": state.category,
            "modified_files": state.modified_files,
            "created_files": state.created_files,
            "errors": state.errors[-5:],
            "test_results": [
                {"command": r.command, "passed": r.passed, "exit_code": r.exit_code}
                for r in state.test_results
            ],
        }
    if context.files:
        payload["file_contents"] = [
            {"path": f.path, "exists": f.exists, "content": f.content} for f in context.files
        ]
    payload.update(extra)
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str)
