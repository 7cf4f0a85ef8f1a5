"""Health checks run after edits, after commands and at the end of a run."""

from __future__ import annotations

import json
import shlex
import threading
from dataclasses import dataclass
from pathlib import Path

from patchforge.change_plan import CommandAction
from patchforge.safety.sandbox import CommandResult, CommandRunner
from patchforge.util.logging import get_logger


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    message: str = ""
    command: str | None = None
    output: str = ""

    @property
    def skipped(self) -> bool:
        return self.command is None

    def failure_text(self) -> str:
        text = f"{self.name} failed"
        if self.command:
            text += f" ({self.command})"
        if self.message:
            text += f": {self.message}"
        if self.output:
            text += f"\n{self.output[-2000:]}"
        return text


def expectation_met(expect: str, exit_code: int) -> bool:
    if expect == "pass":
        return exit_code == 0
    if expect == "fail":
        return exit_code != 0
    return True


class HealthChecker:
    """Runs configured checks, or checks detected from project files."""

    def __init__(
        self,
        root: str | Path,
        runner: CommandRunner,
        build_command: str | None = None,
        lint_command: str | None = None,
        test_command: str | None = None,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.root = Path(root)
        self.runner = runner
        self.build_command = build_command
        self.lint_command = lint_command
        self.test_command = test_command
        self.timeout = timeout
        self.cancel_event = cancel_event
        self.logger = get_logger("patchforge.health")

    def _package_scripts(self) -> dict[str, str]:
        package_json = self.root / "package.json"
        if not package_json.is_file():
            return {}
        try:
            data = json.loads(package_json.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            self.logger.warning("Ignoring unreadable package.json in %s", self.root)
            return {}
        scripts = data.get("scripts") if isinstance(data, dict) else None
        return scripts if isinstance(scripts, dict) else {}

    def _pyproject_text(self) -> str:
        path = self.root / "pyproject.toml"
        return path.read_text(encoding="utf-8") if path.is_file() else ""

    def build_command_for(self, path: str | None) -> str | None:
        if self.build_command:
            return self.build_command
        if (self.root / "tsconfig.json").is_file() and "typecheck" in self._package_scripts():
            return "npm run typecheck"
        if path and path.endswith(".py"):
            return f"python -m py_compile {shlex.quote(path)}"
        return None

    def lint_command_for(self) -> str | None:
        if self.lint_command:
            return self.lint_command
        if "lint" in self._package_scripts():
            return "npm run lint"
        if "[tool.ruff" in self._pyproject_text():
            return "ruff check ."
        return None

    def test_commands(self) -> list[str]:
        if self.test_command:
            return [self.test_command]
        if "test" in self._package_scripts():
            return ["npm test"]
        if (self.root / "pytest.ini").is_file() or "[tool.pytest" in self._pyproject_text():
            return ["python -m pytest -q"]
        if (self.root / "tests").is_dir() and any((self.root / "tests").glob("test_*.py")):
            return ["python -m pytest -q"]
        return []

    def _run(self, name: str, command: str | None, missing: str) -> HealthCheckResult:
        if command is None:
            return HealthCheckResult(name=name, passed=True, message=missing)
        result = self.runner.exec(command, timeout=self.timeout, cancel_event=self.cancel_event)
        return HealthCheckResult(
            name=name,
            passed=result.exit_code == 0,
            message="" if result.exit_code == 0 else f"exit code {result.exit_code}",
            command=command,
            output=result.output,
        )

    def check_edit(self, path: str | None) -> HealthCheckResult:
        return self._run("build", self.build_command_for(path), "No build or type check detected")

    def check_command(self, action: CommandAction, result: CommandResult) -> HealthCheckResult:
        passed = expectation_met(action.expect, result.exit_code)
        message = "" if passed else f"expected {action.expect}, got exit code {result.exit_code}"
        return HealthCheckResult(
            name="command", passed=passed, message=message, command=action.cmd, output=result.output
        )

    def run_lint(self) -> HealthCheckResult:
        return self._run("lint", self.lint_command_for(), "No lint configuration detected")

    def run_tests(self) -> HealthCheckResult:
        commands = self.test_commands()
        return self._run("tests", commands[0] if commands else None, "No test configuration detected")

    def final_checks(self) -> list[HealthCheckResult]:
        return [self.run_lint(), self.run_tests()]
