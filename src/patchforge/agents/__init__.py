"""Agent implementations for each pipeline role."""

from patchforge.agents.base import Agent, AgentDeps
from patchforge.agents.coordinator import CoordinatorAgent
from patchforge.agents.implementer import ImplementerAgent
from patchforge.agents.planner import PlannerAgent
from patchforge.agents.registry import AgentRegistry, MissingAgentError
from patchforge.agents.reviewer import ReviewerAgent
from patchforge.agents.verifier import VerifierAgent

__all__ = [
    "Agent",
    "AgentDeps",
    "AgentRegistry",
    "CoordinatorAgent",
    "ImplementerAgent",
    "MissingAgentError",
    "PlannerAgent",
    "ReviewerAgent",
    "VerifierAgent",
]
