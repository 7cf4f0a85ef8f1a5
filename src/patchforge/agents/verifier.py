"""Verifier: runs the project's tests and reports structured failures."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from patchforge.agents.base import Agent, render_payload
from patchforge.protocol import AgentResponse, Continue, Reject
from patchforge.roles import AgentRole
from patchforge.state import ContextSlice, TestResult
from patchforge.workflows.plan import StepInput


_ERROR_LINE_RE = re.compile(r"\b(error|fail(ed|ure)?|exception|assert|traceback)\b", re.IGNORECASE)


class VerifierReport(BaseModel):
    passed: bool
    results: list[TestResult] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    summary: str = ""


def extract_error_lines(output: str, limit: int = 20) -> list[str]:
    issues: list[str] = []
    for line in output.splitlines():
        stripped = line.strip()
        if stripped and _ERROR_LINE_RE.search(stripped) and stripped not in issues:
            issues.append(stripped[:300])
            if len(issues) >= limit:
                break
    return issues


class VerifierAgent(Agent):
    role = AgentRole.VERIFIER

    def test_commands(self) -> list[str]:
        if self.deps.health is not None:
            return self.deps.health.test_commands()
        command = self.deps.settings.test_command
        return [command] if command else []

    def process(self, step_input: StepInput, context: ContextSlice) -> AgentResponse:
        commands = self.test_commands()
        runner = self.deps.runner
        if not commands or runner is None:
            report = VerifierReport(passed=True, summary="No test configuration detected")
            return AgentResponse(output=report, next_action=Continue(next_role=AgentRole.REVIEWER))

        cancel_event = self.deps.health.cancel_event if self.deps.health is not None else None
        results: list[TestResult] = []
        for command in commands:
            outcome = runner.exec(
                command,
                timeout=self.deps.settings.command_timeout_seconds,
                cancel_event=cancel_event,
            )
            results.append(
                TestResult(
                    command=command,
                    exit_code=outcome.exit_code,
                    passed=outcome.exit_code == 0,
                    output=outcome.output[-4000:],
                )
            )
        failed = [result for result in results if not result.passed]
        if not failed:
            report = VerifierReport(passed=True, results=results, summary="All tests passed")
            return AgentResponse(
                output=report,
                next_action=Continue(next_role=AgentRole.REVIEWER),
                metadata={"test_results": results},
            )

        issues: list[str] = []
        for result in failed:
            issues.extend(extract_error_lines(result.output))
        failure_text = "\n\n".join(f"$ {r.command}\n{r.output}" for r in failed)
        summary = self.complete(
            render_payload(step_input, context, test_failures=failure_text, issues=issues)
        ).strip()
        reason = summary or "; ".join(issues) or f"Tests failed: {failed[0].command}"
        report = VerifierReport(passed=False, results=results, issues=issues, summary=reason)
        self.logger.info("Tests failed with %s issues", len(issues))
        return AgentResponse(
            output=report,
            next_action=Reject(reason=reason, suggested_role=AgentRole.IMPLEMENTER),
            metadata={"test_results": results},
        )
