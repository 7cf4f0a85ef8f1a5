"""Agent registry: role -> factory."""

from __future__ import annotations

from typing import Callable, Iterable

from patchforge.agents.base import Agent, AgentDeps
from patchforge.roles import AgentRole


AgentFactory = Callable[[AgentDeps], Agent]


class MissingAgentError(RuntimeError):
    """Raised when a plan step names a role with no registered agent."""

    def __init__(self, role: AgentRole) -> None:
        self.role = role
        super().__init__(f"No agent registered for role '{role.value}'")


class AgentRegistry:
    """Registry of agent factories; agents are built lazily and cached."""

    def __init__(self, deps: AgentDeps) -> None:
        self.deps = deps
        self._factories: dict[AgentRole, AgentFactory] = {}
        self._agents: dict[AgentRole, Agent] = {}

    def register(self, role: AgentRole, factory: AgentFactory) -> None:
        self._factories[role] = factory
        self._agents.pop(role, None)

    def register_all(self, factories: Iterable[tuple[AgentRole, AgentFactory]]) -> None:
        for role, factory in factories:
            self.register(role, factory)

    def unregister(self, role: AgentRole) -> None:
        self._factories.pop(role, None)
        self._agents.pop(role, None)

    def has(self, role: AgentRole) -> bool:
        return role in self._factories

    def get(self, role: AgentRole) -> Agent:
        agent = self._agents.get(role)
        if agent is not None:
            return agent
        factory = self._factories.get(role)
        if factory is None:
            raise MissingAgentError(role)
        agent = factory(self.deps)
        self._agents[role] = agent
        return agent

    def list(self) -> list[AgentRole]:
        return list(self._factories)

    def clear(self) -> None:
        self._factories.clear()
        self._agents.clear()
