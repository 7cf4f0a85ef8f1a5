"""Session state shared by the orchestrator and projected for agents."""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, Field, PrivateAttr


class ContextFrozenError(RuntimeError):
    """Raised when a frozen (cancelled) context is mutated."""


class Message(BaseModel):
    role: str
    content: str
    timestamp: float = Field(default_factory=time.time)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TestResult(BaseModel):
    __test__ = False

    command: str
    exit_code: int
    passed: bool
    output: str = ""


class TaskState(BaseModel):
    status: Literal["planning", "executing", "completed", "failed"] = "planning"
    category: str | None = None
    current_step: int = 0
    total_steps: int = 0
    created_files: list[str] = Field(default_factory=list)
    modified_files: list[str] = Field(default_factory=list)
    diffs: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    test_results: list[TestResult] = Field(default_factory=list)


class CommitInfo(BaseModel):
    hash: str
    message: str
    author: str
    date: str


class GitInfo(BaseModel):
    branch: str = ""
    is_clean: bool = True
    last_commit: CommitInfo | None = None


class RepoSnapshot(BaseModel):
    root_path: str
    files: list[str] = Field(default_factory=list)
    git: GitInfo = Field(default_factory=GitInfo)

    def overview(self, max_files: int = 20) -> str:
        lines = [
            f"Repository at {self.root_path}, branch: {self.git.branch or 'n/a'}, "
            f"{'clean' if self.git.is_clean else 'dirty'}, files: {len(self.files)}"
        ]
        for path in self.files[:max_files]:
            lines.append(f"- {path}")
        if len(self.files) > max_files:
            lines.append(f"... and {len(self.files) - max_files} more files")
        return "\n".join(lines)


class FileContext(BaseModel):
    path: str
    content: str
    summary: str | None = None
    exists: bool = True


class AgentContext(BaseModel):
    """Mutable session state owned by one orchestrator run."""

    user_request: str = ""
    history: list[Message] = Field(default_factory=list)
    task_state: TaskState = Field(default_factory=TaskState)
    repo: RepoSnapshot
    role_context: dict[str, Any] = Field(default_factory=dict)
    _frozen: bool = PrivateAttr(default=False)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ContextFrozenError("Agent context is frozen after cancellation")

    def add_message(self, role: str, content: str, **metadata: Any) -> Message:
        self._check_mutable()
        message = Message(role=role, content=content, metadata=metadata)
        self.history.append(message)
        return message

    def record_file_change(self, path: str, diff: str, created: bool = False) -> None:
        self._check_mutable()
        bucket = self.task_state.created_files if created else self.task_state.modified_files
        if path in bucket:
            bucket.remove(path)
        bucket.append(path)
        self.task_state.diffs.append(diff)

    def record_test_result(self, result: TestResult) -> None:
        self._check_mutable()
        self.task_state.test_results.append(result)

    def record_error(self, error: str) -> None:
        self._check_mutable()
        self.task_state.errors.append(error)

    def touched_files(self) -> list[str]:
        seen: list[str] = []
        for path in self.task_state.created_files + self.task_state.modified_files:
            if path not in seen:
                seen.append(path)
        return seen

    def last_touched_file(self) -> str | None:
        # modified_files is kept in recency order by record_file_change
        if self.task_state.modified_files:
            return self.task_state.modified_files[-1]
        if self.task_state.created_files:
            return self.task_state.created_files[-1]
        return None


class ContextSlice(BaseModel):
    """Role-specific, read-only view handed to an agent."""

    role: str
    user_request: str
    history: list[Message] = Field(default_factory=list)
    files: list[FileContext] = Field(default_factory=list)
    file_list: list[str] = Field(default_factory=list)
    task_state: TaskState | None = None
    repo_overview: str | None = None
    repo: RepoSnapshot | None = None
    extras: dict[str, Any] = Field(default_factory=dict)

    def file(self, path: str) -> FileContext | None:
        return next((item for item in self.files if item.path == path), None)
