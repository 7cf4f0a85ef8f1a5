"""Agent roles and their default configuration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AgentRole(str, Enum):
    COORDINATOR = "coordinator"
    PLANNER = "planner"
    IMPLEMENTER = "implementer"
    VERIFIER = "verifier"
    REVIEWER = "reviewer"


class TaskCategory(str, Enum):
    DIRECT_ANSWER = "direct_answer"
    IMPLEMENTATION = "implementation"
    FIX = "fix"
    REVIEW = "review"


# Only the reviewer may finish these with user-facing output.
IMPLEMENTATION_CATEGORIES = frozenset({TaskCategory.IMPLEMENTATION, TaskCategory.FIX})


@dataclass(frozen=True)
class RoleConfig:
    role: AgentRole
    model: str
    temperature: float | None
    prompt_name: str


DEFAULT_ROLE_CONFIGS: dict[AgentRole, RoleConfig] = {
    AgentRole.COORDINATOR: RoleConfig(AgentRole.COORDINATOR, "o4-mini", None, "coordinator.md"),
    AgentRole.PLANNER: RoleConfig(AgentRole.PLANNER, "o3", None, "planner.md"),
    AgentRole.IMPLEMENTER: RoleConfig(AgentRole.IMPLEMENTER, "o4-mini", 0.2, "implementer.md"),
    AgentRole.VERIFIER: RoleConfig(AgentRole.VERIFIER, "o4-mini", 0.3, "verifier.md"),
    AgentRole.REVIEWER: RoleConfig(AgentRole.REVIEWER, "o3", None, "reviewer.md"),
}

DEFAULT_SEQUENCES: dict[TaskCategory, list[AgentRole]] = {
    TaskCategory.DIRECT_ANSWER: [],
    TaskCategory.IMPLEMENTATION: [
        AgentRole.PLANNER,
        AgentRole.IMPLEMENTER,
        AgentRole.VERIFIER,
        AgentRole.REVIEWER,
    ],
    TaskCategory.FIX: [AgentRole.IMPLEMENTER, AgentRole.VERIFIER, AgentRole.REVIEWER],
    TaskCategory.REVIEW: [AgentRole.REVIEWER],
}
