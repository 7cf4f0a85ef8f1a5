"""Confirmation gates consulted before a change touches the workspace."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Literal


@dataclass(frozen=True)
class ProposedChange:
    kind: Literal["edit", "command"]
    target: str
    detail: str = ""


@dataclass(frozen=True)
class ConfirmationDecision:
    approved: bool
    reason: str = ""


class ConfirmationGate(ABC):
    @abstractmethod
    def confirm(self, change: ProposedChange) -> ConfirmationDecision:
        raise NotImplementedError


class AutoApproveGate(ConfirmationGate):
    def confirm(self, change: ProposedChange) -> ConfirmationDecision:
        return ConfirmationDecision(approved=True)


DEFAULT_DENIED_COMMANDS = [
    r"\brm\s+-[a-z]*r[a-z]*f?\s+/(\s|$)",
    r"\bgit\s+push\b",
    r"\bsudo\b",
    r"\bmkfs\b",
    r":\(\)\s*\{",
]


@dataclass
class PolicyGate(ConfirmationGate):
    """Rule-based gate: denies matching commands and, when read-only, every edit."""

    denied_command_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_DENIED_COMMANDS))
    read_only: bool = False
    protected_paths: list[str] = field(default_factory=lambda: [".git/"])

    def confirm(self, change: ProposedChange) -> ConfirmationDecision:
        if change.kind == "edit":
            if self.read_only:
                return ConfirmationDecision(False, "Workspace is read-only")
            normalized = change.target.removeprefix("./")
            for prefix in self.protected_paths:
                if normalized.startswith(prefix):
                    return ConfirmationDecision(False, f"Path {change.target} is protected")
            return ConfirmationDecision(True)
        for pattern in self.denied_command_patterns:
            if re.search(pattern, change.target):
                return ConfirmationDecision(False, f"Command matches denied pattern {pattern!r}")
        return ConfirmationDecision(True)


class InteractiveGate(ConfirmationGate):
    """Asks the user on the terminal; anything but yes is a denial."""

    def __init__(
        self,
        prompt: Callable[[str], str] = input,
        fallback: ConfirmationGate | None = None,
    ) -> None:
        self.prompt = prompt
        self.fallback = fallback

    def confirm(self, change: ProposedChange) -> ConfirmationDecision:
        if self.fallback is not None:
            decision = self.fallback.confirm(change)
            if not decision.approved:
                return decision
        question = f"Apply {change.kind} {change.target}?"
        if change.detail:
            question = f"{change.detail}\n{question}"
        answer = self.prompt(f"{question} [y/N] ").strip().lower()
        if answer in {"y", "yes"}:
            return ConfirmationDecision(True)
        return ConfirmationDecision(False, "Denied by user")
