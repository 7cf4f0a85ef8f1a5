"""Command execution with a sanitized environment, timeout and cancellation."""

from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from patchforge.util.logging import get_logger


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def output(self) -> str:
        return (self.stdout + ("\n" if self.stdout and self.stderr else "") + self.stderr).strip()


class CommandRunner:
    """Runs shell commands in the repository root.

    The process is polled so that a timeout or a set ``cancel_event`` kills it
    promptly; a killed process reports exit code -1.
    """

    def __init__(
        self,
        cwd: str | Path,
        env: dict[str, str] | None = None,
        default_timeout: float = 120,
        poll_interval: float = 0.1,
    ) -> None:
        self.cwd = Path(cwd)
        self.env = sanitize_env(dict(os.environ if env is None else env))
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.logger = get_logger("patchforge.sandbox")

    def exec(
        self,
        cmd: str,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CommandResult:
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        self.logger.debug("Running command: %s", cmd)
        process = subprocess.Popen(
            cmd,
            shell=True,
            cwd=self.cwd,
            env=self.env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        timed_out = False
        cancelled = False
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                elif time.monotonic() - started > limit:
                    timed_out = True
                else:
                    continue
                process.kill()
                stdout, stderr = process.communicate()
                break
        duration = time.monotonic() - started
        exit_code = -1 if (timed_out or cancelled) else process.returncode
        if timed_out:
            stderr = (stderr or "") + f"\nCommand timed out after {limit}s"
        if cancelled:
            stderr = (stderr or "") + "\nCommand cancelled"
        return CommandResult(
            exit_code=exit_code,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_seconds=duration,
            timed_out=timed_out,
            cancelled=cancelled,
        )


def sanitize_env(env: dict[str, str]) -> dict[str, str]:
    """Return a sanitized environment for subprocesses."""
    allowlist = {"PATH", "PYTHONPATH", "HOME", "TMPDIR", "USER", "LANG", "LC_ALL", "VIRTUAL_ENV"}
    allowlist.update(_parse_passthrough_env())
    filtered: dict[str, str] = {}
    for key, value in env.items():
        if _is_sensitive_key(key):
            continue
        if key in allowlist:
            filtered[key] = value
    return filtered


def _parse_passthrough_env() -> set[str]:
    raw = os.environ.get("PATCHFORGE_PASSTHROUGH_ENV", "")
    if not raw:
        return set()
    return {item.strip() for item in raw.split(",") if item.strip()}


def _is_sensitive_key(key: str) -> bool:
    upper = key.upper()
    return upper.startswith(("OPENAI_", "API_KEY", "TOKEN", "SECRET")) or upper.endswith(
        ("_TOKEN", "_SECRET", "_API_KEY")
    )
