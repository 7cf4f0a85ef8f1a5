import shlex
import sys
import threading
from pathlib import Path

from patchforge.safety.policy import InteractiveGate, PolicyGate, ProposedChange
from patchforge.safety.sandbox import CommandRunner, sanitize_env

PYTHON = shlex.quote(sys.executable)


def _python(code: str) -> str:
    return f"{PYTHON} -c {shlex.quote(code)}"


def test_exec_captures_output_and_exit_code(tmp_path: Path):
    runner = CommandRunner(tmp_path)
    result = runner.exec(_python("import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"))
    assert result.exit_code == 3
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert result.output == "out\n\nerr"
    assert not result.timed_out


def test_exec_runs_in_working_directory(tmp_path: Path):
    (tmp_path / "marker.txt").write_text("here", encoding="utf-8")
    result = CommandRunner(tmp_path).exec(_python("print(open('marker.txt').read())"))
    assert result.exit_code == 0
    assert result.stdout.strip() == "here"


def test_timeout_kills_process(tmp_path: Path):
    result = CommandRunner(tmp_path, poll_interval=0.05).exec(
        _python("import time; time.sleep(10)"), timeout=0.3
    )
    assert result.timed_out
    assert result.exit_code == -1
    assert "timed out" in result.stderr
    assert result.duration_seconds < 5


def test_cancel_event_kills_process(tmp_path: Path):
    cancel = threading.Event()
    cancel.set()
    result = CommandRunner(tmp_path, poll_interval=0.05).exec(
        _python("import time; time.sleep(10)"), cancel_event=cancel
    )
    assert result.cancelled
    assert result.exit_code == -1


def test_sanitize_env_drops_secrets_and_unknown_keys(monkeypatch):
    monkeypatch.delenv("PATCHFORGE_PASSTHROUGH_ENV", raising=False)
    env = {
        "PATH": "/usr/bin",
        "HOME": "/home/dev",
        "OPENAI_API_KEY": "sk-secret",
        "GITHUB_TOKEN": "ghp",
        "CUSTOM_FLAG": "1",
    }
    assert sanitize_env(env) == {"PATH": "/usr/bin", "HOME": "/home/dev"}


def test_sanitize_env_passthrough_still_blocks_secrets(monkeypatch):
    monkeypatch.setenv("PATCHFORGE_PASSTHROUGH_ENV", "CUSTOM_FLAG, DEPLOY_TOKEN")
    env = {"CUSTOM_FLAG": "1", "DEPLOY_TOKEN": "abc"}
    assert sanitize_env(env) == {"CUSTOM_FLAG": "1"}


def test_runner_environment_is_sanitized(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("PATCHFORGE_PASSTHROUGH_ENV", raising=False)
    runner = CommandRunner(tmp_path, env={"PATH": "/usr/bin:/bin", "OPENAI_API_KEY": "sk-x"})
    assert "OPENAI_API_KEY" not in runner.env
    result = runner.exec(_python("import os; print(os.environ.get('OPENAI_API_KEY', 'absent'))"))
    assert result.stdout.strip() == "absent"


def test_policy_gate_denies_dangerous_commands():
    gate = PolicyGate()
    assert not gate.confirm(ProposedChange("command", "git push origin main")).approved
    assert not gate.confirm(ProposedChange("command", "sudo make install")).approved
    assert not gate.confirm(ProposedChange("command", "rm -rf /")).approved
    assert gate.confirm(ProposedChange("command", "rm -rf build/")).approved
    assert gate.confirm(ProposedChange("command", "pytest -q")).approved


def test_policy_gate_edits():
    assert PolicyGate().confirm(ProposedChange("edit", "src/a.py")).approved
    protected = PolicyGate().confirm(ProposedChange("edit", "./.git/config"))
    assert not protected.approved
    assert "protected" in protected.reason
    read_only = PolicyGate(read_only=True).confirm(ProposedChange("edit", "src/a.py"))
    assert not read_only.approved
    assert read_only.reason == "Workspace is read-only"


def test_interactive_gate_prompts_user():
    answers = iter(["y", "no"])
    prompts: list[str] = []

    def prompt(text: str) -> str:
        prompts.append(text)
        return next(answers)

    gate = InteractiveGate(prompt=prompt)
    assert gate.confirm(ProposedChange("edit", "a.py", "Fix typo")).approved
    denied = gate.confirm(ProposedChange("command", "make"))
    assert not denied.approved
    assert denied.reason == "Denied by user"
    assert prompts[0] == "Fix typo\nApply edit a.py? [y/N] "


def test_interactive_gate_fallback_denial_skips_prompt():
    def prompt(text: str) -> str:
        raise AssertionError("should not prompt")

    gate = InteractiveGate(prompt=prompt, fallback=PolicyGate())
    assert not gate.confirm(ProposedChange("command", "git push")).approved
