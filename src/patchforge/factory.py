"""Shared construction helpers for models, agents and the orchestrator."""

from __future__ import annotations

import threading
from pathlib import Path

from patchforge.agents import (
    AgentDeps,
    AgentRegistry,
    CoordinatorAgent,
    ImplementerAgent,
    PlannerAgent,
    ReviewerAgent,
    VerifierAgent,
)
from patchforge.agents.registry import AgentFactory
from patchforge.completion import CompletionClient
from patchforge.config import Settings
from patchforge.context import ContextBuilder, FileContentCache, SummaryCache
from patchforge.health import HealthChecker
from patchforge.models.base import BaseChatModel
from patchforge.models.mock import MockChatModel
from patchforge.models.openai_compat import OpenAICompatChatModel
from patchforge.orchestrator import Orchestrator
from patchforge.prompts import load_prompts
from patchforge.roles import AgentRole
from patchforge.safety.policy import ConfirmationGate, InteractiveGate, PolicyGate
from patchforge.safety.sandbox import CommandRunner
from patchforge.telemetry import TelemetryCollector
from patchforge.util.progress import ProgressSink


AGENT_FACTORIES: dict[AgentRole, AgentFactory] = {
    AgentRole.COORDINATOR: CoordinatorAgent,
    AgentRole.PLANNER: PlannerAgent,
    AgentRole.IMPLEMENTER: ImplementerAgent,
    AgentRole.VERIFIER: VerifierAgent,
    AgentRole.REVIEWER: ReviewerAgent,
}


def build_model(settings: Settings, use_mock: bool = False) -> BaseChatModel:
    if use_mock or not settings.openai_api_key:
        return MockChatModel()
    return OpenAICompatChatModel(
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
        timeout_seconds=settings.openai_timeout_seconds,
        extra_headers=settings.extra_headers(),
    )


def build_client(
    settings: Settings, model: BaseChatModel, collector: TelemetryCollector | None = None
) -> CompletionClient:
    return CompletionClient(
        model,
        role_configs=settings.role_configs(),
        collector=collector,
        max_retries=settings.max_retries,
        base_delay=settings.rate_limit_base_delay_seconds,
    )


def build_registry(settings: Settings, deps: AgentDeps) -> AgentRegistry:
    registry = AgentRegistry(deps)
    disabled = settings.disabled()
    for role, factory in AGENT_FACTORIES.items():
        if role not in disabled:
            registry.register(role, factory)
    return registry


def build_gate(settings: Settings) -> ConfirmationGate:
    policy = PolicyGate(read_only=settings.read_only)
    if settings.auto_approve:
        return policy
    return InteractiveGate(fallback=policy)


def build_context_builder(settings: Settings) -> ContextBuilder:
    summary_cache = SummaryCache(settings.cache_dir) if settings.cache_dir else None
    return ContextBuilder(
        cache=FileContentCache(summary_cache=summary_cache),
        planner_history_window=settings.planner_history_window,
        verifier_history_window=settings.verifier_history_window,
    )


def build_orchestrator(
    settings: Settings,
    model: BaseChatModel | None = None,
    *,
    gate: ConfirmationGate | None = None,
    progress: ProgressSink | None = None,
    runner: CommandRunner | None = None,
) -> Orchestrator:
    root = Path(settings.repo_root)
    cancel_event = threading.Event()
    collector = TelemetryCollector(workspace_dir=Path(settings.workspace_dir))
    client = build_client(settings, model or build_model(settings), collector)
    runner = runner or CommandRunner(root, default_timeout=settings.command_timeout_seconds)
    health = HealthChecker(
        root,
        runner,
        build_command=settings.build_command,
        lint_command=settings.lint_command,
        test_command=settings.test_command,
        timeout=settings.command_timeout_seconds,
        cancel_event=cancel_event,
    )
    deps = AgentDeps(
        client=client,
        settings=settings,
        runner=runner,
        health=health,
        prompts=load_prompts(settings.prompts_dir, settings.role_configs()),
    )
    return Orchestrator(
        settings=settings,
        registry=build_registry(settings, deps),
        runner=runner,
        health=health,
        collector=collector,
        gate=gate or build_gate(settings),
        context_builder=build_context_builder(settings),
        progress=progress,
        cancel_event=cancel_event,
        repo_root=root,
    )
