"""System prompts per role; files in the prompts directory override defaults."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping

from patchforge.roles import DEFAULT_ROLE_CONFIGS, AgentRole, RoleConfig


COORDINATOR_PROMPT = """You coordinate a team of coding agents: planner, implementer, verifier, reviewer.
Classify the user request and propose the ordered steps to handle it.
Reply with one JSON object and nothing else:
{"category": "direct_answer" | "implementation" | "fix" | "review",
 "answer": "<only for direct_answer>",
 "steps": [{"role": "<role>", "action": "<what to do>", "file": "<optional>", "cmd": "<optional>"}]}
When asked to recover from a failed step, reply with
{"recovery_steps": [<steps as above>]} and an empty list if nothing can be done."""

PLANNER_PROMPT = """You are the planner. Break the request into concrete actions.
Reply with one JSON object and nothing else, no prose and no commentary:
{"actions": [
  {"kind": "edit", "file": "<path>", "description": "<change>", "hints": "<optional>"},
  {"kind": "command", "cmd": "<shell command>", "expect": "pass" | "fail" | "unknown"},
  {"kind": "message", "content": "<note for the user>"}
]}
Actions run in the given order."""

IMPLEMENTER_PROMPT = """You are the implementer. Change exactly one file as described.
Reply with a patch in this format and nothing else:
*** Begin Patch
*** Update File: <path>
@@ -<start>,<count> +<start>,<count> @@
 context line
-removed line
+added line
*** End Patch
Use "*** Add File: <path>" with the full content for new files.
If the task is unclear, reply with a single line starting with "QUESTION:"."""

VERIFIER_PROMPT = """You are the verifier. Given failing test output, summarise the failures
as a short list of concrete issues the implementer must fix."""

REVIEWER_PROMPT = """You are the reviewer. Review the accumulated diffs and test results.
Reply with one JSON object:
{"approved": true | false, "summary": "<one paragraph>",
 "issues": ["<problem>"], "recommendations": ["<suggestion>"]}"""

DEFAULT_PROMPTS: dict[AgentRole, str] = {
    AgentRole.COORDINATOR: COORDINATOR_PROMPT,
    AgentRole.PLANNER: PLANNER_PROMPT,
    AgentRole.IMPLEMENTER: IMPLEMENTER_PROMPT,
    AgentRole.VERIFIER: VERIFIER_PROMPT,
    AgentRole.REVIEWER: REVIEWER_PROMPT,
}


def load_prompts(
    prompts_dir: str | Path | None = None,
    role_configs: Mapping[AgentRole, RoleConfig] | None = None,
) -> dict[AgentRole, str]:
    configs = role_configs or DEFAULT_ROLE_CONFIGS
    prompts = dict(DEFAULT_PROMPTS)
    if prompts_dir is None:
        return prompts
    base = Path(prompts_dir)
    for role, config in configs.items():
        path = base / config.prompt_name
        if path.is_file():
            text = path.read_text(encoding="utf-8").strip()
            if text:
                prompts[role] = text
    return prompts
