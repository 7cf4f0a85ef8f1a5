from __future__ import annotations

import json

import pytest

from patchforge.agents import (
    AgentDeps,
    AgentRegistry,
    CoordinatorAgent,
    ImplementerAgent,
    MissingAgentError,
    PlannerAgent,
    ReviewerAgent,
    VerifierAgent,
)
from patchforge.agents.coordinator import CoordinatorDecision, CoordinatorOutputError, RecoveryDecision
from patchforge.agents.implementer import ImplementerInputError, ImplementerOutput
from patchforge.agents.reviewer import ReviewVerdictError, parse_review
from patchforge.agents.verifier import VerifierReport, extract_error_lines
from patchforge.change_plan import ChangePlan, CommandAction, EditAction, PlanValidationError
from patchforge.completion import CompletionClient
from patchforge.config import Settings
from patchforge.models.mock import MockChatModel
from patchforge.patching import PatchError
from patchforge.protocol import Complete, Continue, Question, Reject
from patchforge.roles import AgentRole
from patchforge.safety.sandbox import CommandResult
from patchforge.state import ContextSlice, FileContext, TaskState
from patchforge.workflows.plan import StepInput


class FakeRunner:
    def __init__(self, *results: CommandResult) -> None:
        self.results = list(results)
        self.commands: list[str] = []

    def exec(self, cmd, timeout=None, cancel_event=None) -> CommandResult:
        self.commands.append(cmd)
        return self.results.pop(0)


def _deps(replies: list, **kwargs) -> tuple[AgentDeps, MockChatModel]:
    model = MockChatModel(replies)
    return AgentDeps(client=CompletionClient(model, sleep=lambda _: None), **kwargs), model


def _slice(role: AgentRole, *files: FileContext) -> ContextSlice:
    return ContextSlice(role=role.value, user_request="improve the greeting", files=list(files))


# coordinator


def test_coordinator_fills_default_sequence():
    deps, model = _deps([json.dumps({"category": "fix", "steps": []})])
    response = CoordinatorAgent(deps).process(StepInput(), _slice(AgentRole.COORDINATOR))
    assert isinstance(response.output, CoordinatorDecision)
    assert [step.role for step in response.output.steps] == [
        AgentRole.IMPLEMENTER,
        AgentRole.VERIFIER,
        AgentRole.REVIEWER,
    ]
    assert isinstance(response.next_action, Continue)
    assert model.calls[0].model == "o4-mini"


def test_coordinator_direct_answer_completes():
    deps, _ = _deps([json.dumps({"category": "direct_answer", "answer": "Yes."})])
    response = CoordinatorAgent(deps).process(StepInput(), _slice(AgentRole.COORDINATOR))
    assert response.next_action == Complete(final_output="Yes.")


def test_coordinator_rejects_unknown_fields():
    deps, _ = _deps([json.dumps({"category": "fix", "steps": [], "extra": 1})])
    with pytest.raises(CoordinatorOutputError):
        CoordinatorAgent(deps).process(StepInput(), _slice(AgentRole.COORDINATOR))


def test_coordinator_recovery_mode():
    reply = json.dumps(
        {"recovery_steps": [{"role": "implementer", "action": "revert", "file": "a.py"}]}
    )
    deps, model = _deps([reply])
    response = CoordinatorAgent(deps).process(
        StepInput(kind="recovery", error="build failed"), _slice(AgentRole.COORDINATOR)
    )
    assert isinstance(response.output, RecoveryDecision)
    step = response.output.recovery_steps[0].to_step("recovery_task")
    assert step.input.kind == "recovery_task"
    assert step.input.action == EditAction(file="a.py", description="revert")
    assert '"mode": "recovery"' in model.calls[0].payload


# planner


def test_planner_returns_change_plan():
    reply = json.dumps({"actions": [{"kind": "command", "cmd": "pytest -q", "expect": "fail"}]})
    deps, model = _deps([reply])
    response = PlannerAgent(deps).process(StepInput(), _slice(AgentRole.PLANNER))
    assert isinstance(response.output, ChangePlan)
    assert response.output.actions[0] == CommandAction(cmd="pytest -q", expect="fail")
    assert model.calls[0].model == "o3"


def test_planner_rejects_prose():
    deps, _ = _deps(["Sure! First we edit a.py and then run the tests."])
    with pytest.raises(PlanValidationError):
        PlannerAgent(deps).process(StepInput(), _slice(AgentRole.PLANNER))


# implementer


def test_implementer_without_action_asks_planner():
    deps, model = _deps([])
    response = ImplementerAgent(deps).process(
        StepInput(description="make it better"), _slice(AgentRole.IMPLEMENTER)
    )
    assert isinstance(response.next_action, Question)
    assert response.next_action.target_role == AgentRole.PLANNER
    assert model.calls == []


def test_implementer_passes_commands_through():
    deps, model = _deps([])
    action = CommandAction(cmd="make test")
    response = ImplementerAgent(deps).process(StepInput(action=action), _slice(AgentRole.IMPLEMENTER))
    assert response.output == action
    assert model.calls == []


def test_implementer_returns_patch_for_target_file():
    reply = "Tweaked.\n*** Begin Patch\n*** Update File: ./src/a.py\n@@\n-a = 1\n+a = 2\n*** End Patch\n"
    deps, model = _deps([reply])
    action = EditAction(file="src/a.py", description="bump a")
    response = ImplementerAgent(deps).process(StepInput(action=action), _slice(AgentRole.IMPLEMENTER))
    assert isinstance(response.output, ImplementerOutput)
    assert response.output.file == "src/a.py"
    assert response.output.explanation == "Tweaked."
    assert response.metadata["action"] == action.model_dump()
    assert model.calls[0].options["temperature"] == 0.2


def test_implementer_rejects_patch_for_other_file():
    reply = "*** Begin Patch\n*** Add File: other.py\n+x = 1\n*** End Patch\n"
    deps, _ = _deps([reply])
    action = EditAction(file="a.py", description="edit a")
    with pytest.raises(PatchError):
        ImplementerAgent(deps).process(StepInput(action=action), _slice(AgentRole.IMPLEMENTER))


def test_implementer_question_reply():
    deps, _ = _deps(["QUESTION: should the greeting be localized?"])
    action = EditAction(file="a.py", description="edit a")
    response = ImplementerAgent(deps).process(StepInput(action=action), _slice(AgentRole.IMPLEMENTER))
    assert response.next_action == Question(
        question="should the greeting be localized?", target_role=AgentRole.PLANNER
    )


def test_implementer_resume_uses_first_planned_action():
    answer = ChangePlan(
        actions=[
            EditAction(file="b.py", description="first"),
            EditAction(file="c.py", description="second"),
        ]
    )
    deps, _ = _deps([])
    agent = ImplementerAgent(deps)
    action = agent.resolve_action(
        StepInput(kind="resume", answer=answer), _slice(AgentRole.IMPLEMENTER)
    )
    assert action == EditAction(file="b.py", description="first")


def test_implementer_resume_with_text_answer_targets_context_file():
    deps, _ = _deps([])
    agent = ImplementerAgent(deps)
    step_input = StepInput(
        kind="resume",
        answer="Rename the helper",
        previous_input=StepInput(description="clean up"),
    )
    action = agent.resolve_action(
        step_input, _slice(AgentRole.IMPLEMENTER, FileContext(path="util.py", content=""))
    )
    assert isinstance(action, EditAction)
    assert action.file == "util.py"
    assert action.description == "clean up\nClarification: Rename the helper"


def test_implementer_resume_without_answer_is_an_input_error():
    deps, _ = _deps([])
    with pytest.raises(ImplementerInputError):
        ImplementerAgent(deps).process(StepInput(kind="resume"), _slice(AgentRole.IMPLEMENTER))


# verifier


def test_verifier_without_tests_passes_to_reviewer():
    deps, model = _deps([], runner=FakeRunner())
    response = VerifierAgent(deps).process(StepInput(), _slice(AgentRole.VERIFIER))
    assert response.next_action == Continue(next_role=AgentRole.REVIEWER)
    assert isinstance(response.output, VerifierReport) and response.output.passed
    assert model.calls == []


def test_verifier_failure_rejects_to_implementer():
    runner = FakeRunner(
        CommandResult(1, "FAILED tests/test_a.py::test_x - AssertionError\n1 failed", "", 0.5)
    )
    deps, model = _deps(
        ["test_x asserts the old greeting"],
        runner=runner,
        settings=Settings(test_command="pytest -q"),
    )
    response = VerifierAgent(deps).process(StepInput(), _slice(AgentRole.VERIFIER))
    assert runner.commands == ["pytest -q"]
    assert isinstance(response.next_action, Reject)
    assert response.next_action.suggested_role == AgentRole.IMPLEMENTER
    assert response.next_action.reason == "test_x asserts the old greeting"
    assert response.output.issues[0] == "FAILED tests/test_a.py::test_x - AssertionError"
    assert response.metadata["test_results"][0].exit_code == 1
    assert "test_failures" in model.calls[0].payload


def test_verifier_success_records_results():
    runner = FakeRunner(CommandResult(0, "3 passed", "", 0.2))
    deps, _ = _deps([], runner=runner, settings=Settings(test_command="pytest -q"))
    response = VerifierAgent(deps).process(StepInput(), _slice(AgentRole.VERIFIER))
    assert response.next_action == Continue(next_role=AgentRole.REVIEWER)
    assert response.metadata["test_results"][0].passed


def test_extract_error_lines_deduplicates():
    output = "ok\nERROR: boom\nERROR: boom\nTraceback (most recent call last):\n"
    assert extract_error_lines(output) == ["ERROR: boom", "Traceback (most recent call last):"]


# reviewer


def test_reviewer_approval_completes():
    deps, model = _deps(['Verdict:\n{"approved": true, "summary": "Ship it"}'])
    context = _slice(AgentRole.REVIEWER).model_copy(update={"task_state": TaskState(diffs=["d1"])})
    response = ReviewerAgent(deps).process(StepInput(), context)
    assert response.next_action == Complete(final_output="Ship it")
    assert '"diffs"' in model.calls[0].payload


def test_reviewer_rejection_lists_issues():
    reply = json.dumps({"approved": False, "summary": "Not yet", "issues": ["missing test"]})
    deps, _ = _deps([reply])
    response = ReviewerAgent(deps).process(StepInput(), _slice(AgentRole.REVIEWER))
    assert isinstance(response.next_action, Reject)
    assert response.next_action.suggested_role == AgentRole.IMPLEMENTER
    assert response.next_action.reason == "Not yet\nIssues:\n- missing test"


@pytest.mark.parametrize(
    "text",
    ['{"approved": "yes"}', '{"summary": "fine"}', "Looks good to me!"],
)
def test_review_requires_boolean_verdict(text):
    with pytest.raises(ReviewVerdictError):
        parse_review(text)


# registry


def test_registry_builds_lazily_and_caches():
    deps, _ = _deps([])
    built: list[AgentRole] = []

    def factory(agent_deps: AgentDeps) -> PlannerAgent:
        built.append(AgentRole.PLANNER)
        return PlannerAgent(agent_deps)

    registry = AgentRegistry(deps)
    registry.register(AgentRole.PLANNER, factory)
    assert built == []
    first = registry.get(AgentRole.PLANNER)
    assert registry.get(AgentRole.PLANNER) is first
    assert built == [AgentRole.PLANNER]
    assert registry.list() == [AgentRole.PLANNER]


def test_registry_missing_and_unregister():
    deps, _ = _deps([])
    registry = AgentRegistry(deps)
    registry.register(AgentRole.REVIEWER, ReviewerAgent)
    registry.unregister(AgentRole.REVIEWER)
    assert not registry.has(AgentRole.REVIEWER)
    with pytest.raises(MissingAgentError) as excinfo:
        registry.get(AgentRole.REVIEWER)
    assert excinfo.value.role == AgentRole.REVIEWER
