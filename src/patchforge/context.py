"""Role-specific context projection and content-addressed file caching."""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from patchforge.change_plan import EditAction
from patchforge.roles import AgentRole
from patchforge.state import AgentContext, ContextSlice, FileContext, Message
from patchforge.util.logging import get_logger
from patchforge.workflows.plan import StepInput


logger = get_logger("patchforge.context")

Summarizer = Callable[[str, str], str]


def content_key(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def default_summary(path: str, content: str) -> str:
    lines = content.splitlines()
    first = next((line.strip() for line in lines if line.strip()), "")
    return f"{path}: {len(lines)} lines; starts with {first[:80]!r}"


class SummaryCache:
    """On-disk ``<cache_dir>/<sha256>.summary`` files; safe to delete."""

    def __init__(self, cache_dir: str | Path) -> None:
        self.cache_dir = Path(cache_dir)

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.summary"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def put(self, key: str, summary: str) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._path(key).write_text(summary, encoding="utf-8")


@dataclass
class _CachedContent:
    content: str
    summary: str


class FileContentCache:
    """Decoded file contents keyed by the SHA-256 of their bytes, least recently used evicted."""

    def __init__(
        self,
        summary_cache: SummaryCache | None = None,
        summarizer: Summarizer = default_summary,
        max_entries: int = 256,
    ) -> None:
        self.summary_cache = summary_cache
        self.summarizer = summarizer
        self.max_entries = max(1, max_entries)
        self._entries: OrderedDict[str, _CachedContent] = OrderedDict()
        self.decodes = 0
        self.summaries = 0

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def load(self, root: str | Path, path: str) -> FileContext:
        file_path = Path(root) / path
        if not file_path.is_file():
            return FileContext(path=path, content="", exists=False)
        data = file_path.read_bytes()
        key = content_key(data)
        entry = self._entries.get(key)
        if entry is None:
            self.decodes += 1
            content = data.decode("utf-8", errors="replace")
            entry = _CachedContent(content=content, summary=self._summary(key, path, content))
            self._entries[key] = entry
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        else:
            self._entries.move_to_end(key)
        return FileContext(path=path, content=entry.content, summary=entry.summary)

    def _summary(self, key: str, path: str, content: str) -> str:
        if self.summary_cache is not None:
            cached = self.summary_cache.get(key)
            if cached is not None:
                return cached
        self.summaries += 1
        summary = self.summarizer(path, content)
        if self.summary_cache is not None:
            self.summary_cache.put(key, summary)
        return summary


def target_file(step_input: StepInput | None, context: AgentContext) -> str | None:
    """File an implementer-side step must touch."""
    current = step_input
    while current is not None:
        if isinstance(current.action, EditAction):
            return current.action.file
        if current.action is not None:
            return None
        current = current.previous_input
    if step_input is not None and step_input.kind in {"recovery", "recovery_task", "resume"}:
        return context.last_touched_file()
    return None


class ContextBuilder:
    """Projects the shared AgentContext into per-role slices.

    Slices are deep copies; building one never mutates the shared context.
    """

    def __init__(
        self,
        cache: FileContentCache | None = None,
        planner_history_window: int = 10,
        verifier_history_window: int = 3,
        overview_files: int = 20,
    ) -> None:
        self.cache = cache or FileContentCache()
        self.planner_history_window = planner_history_window
        self.verifier_history_window = verifier_history_window
        self.overview_files = overview_files

    def build(
        self, role: AgentRole, context: AgentContext, step_input: StepInput | None = None
    ) -> ContextSlice:
        if role == AgentRole.COORDINATOR:
            return self._coordinator(context)
        if role == AgentRole.PLANNER:
            return self._planner(context)
        if role == AgentRole.IMPLEMENTER:
            return self._implementer(context, step_input)
        if role == AgentRole.VERIFIER:
            return self._verifier(context, step_input)
        if role == AgentRole.REVIEWER:
            return self._reviewer(context)
        raise ValueError(f"No context rule for role {role}")

    def _history(self, messages: list[Message]) -> list[Message]:
        return [message.model_copy(deep=True) for message in messages]

    def _files(self, context: AgentContext, paths: list[str]) -> list[FileContext]:
        files: list[FileContext] = []
        for path in dict.fromkeys(paths):
            files.append(self.cache.load(context.repo.root_path, path))
        return files

    def _coordinator(self, context: AgentContext) -> ContextSlice:
        return ContextSlice(
            role=AgentRole.COORDINATOR.value,
            user_request=context.user_request,
            history=self._history(context.history),
            repo_overview=context.repo.overview(self.overview_files),
        )

    def _planner(self, context: AgentContext) -> ContextSlice:
        window = context.history[-self.planner_history_window :] if self.planner_history_window else []
        return ContextSlice(
            role=AgentRole.PLANNER.value,
            user_request=context.user_request,
            history=self._history(window),
            file_list=list(context.repo.files),
            task_state=context.task_state.model_copy(deep=True),
        )

    def _implementer_history(self, context: AgentContext) -> list[Message]:
        allowed = {AgentRole.PLANNER.value, "system"}
        return [message for message in context.history if message.role in allowed]

    def _implementer(self, context: AgentContext, step_input: StepInput | None) -> ContextSlice:
        path = target_file(step_input, context)
        return ContextSlice(
            role=AgentRole.IMPLEMENTER.value,
            user_request=context.user_request,
            history=self._history(self._implementer_history(context)),
            files=self._files(context, [path] if path else []),
        )

    def _verifier(self, context: AgentContext, step_input: StepInput | None) -> ContextSlice:
        base = self._implementer_history(context)
        outputs = [m for m in context.history if m.role == AgentRole.IMPLEMENTER.value]
        recent = outputs[-self.verifier_history_window :] if self.verifier_history_window else []
        keep = {id(message) for message in base + recent}
        history = [message for message in context.history if id(message) in keep]
        path = target_file(step_input, context)
        paths = ([path] if path else []) + context.touched_files()
        return ContextSlice(
            role=AgentRole.VERIFIER.value,
            user_request=context.user_request,
            history=self._history(history),
            files=self._files(context, paths),
            task_state=context.task_state.model_copy(deep=True),
        )

    def _reviewer(self, context: AgentContext) -> ContextSlice:
        return ContextSlice(
            role=AgentRole.REVIEWER.value,
            user_request=context.user_request,
            history=self._history(context.history),
            files=self._files(context, context.touched_files()),
            file_list=list(context.repo.files),
            task_state=context.task_state.model_copy(deep=True),
            repo=context.repo.model_copy(deep=True),
            repo_overview=context.repo.overview(self.overview_files),
        )
