"""Patch parsing and application for implementer output.

Accepted forms:

* ``*** Begin Patch`` envelopes with ``*** Update File:`` / ``*** Add File:``
  sections holding unified-diff hunks or full replacement content,
* bare unified diffs (``--- a/x`` / ``+++ b/x``),
* a fenced code block, taken as the full new content of the target file.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


BEGIN_MARKER = "*** Begin Patch"
END_MARKER = "*** End Patch"

_HUNK_RE = re.compile(r"^@@\s*(?:-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s*@@)?.*$")
_FILE_HEADER_RE = re.compile(r"^\*\*\* (Update|Add|Delete) File:\s*(.+?)\s*$")
_FENCE_RE = re.compile(r"```[\w.+-]*[ \t]*\n(.*?)```", re.DOTALL)


class PatchError(RuntimeError):
    """Raised when a patch cannot be parsed or does not apply cleanly."""


@dataclass
class Hunk:
    old_start: int | None
    lines: list[tuple[str, str]] = field(default_factory=list)

    @property
    def old_block(self) -> list[str]:
        return [text for tag, text in self.lines if tag in (" ", "-")]

    @property
    def new_block(self) -> list[str]:
        return [text for tag, text in self.lines if tag in (" ", "+")]


@dataclass
class FilePatch:
    path: str
    operation: Literal["update", "add"]
    hunks: list[Hunk] = field(default_factory=list)
    content: str | None = None


@dataclass
class Patch:
    files: list[FilePatch]

    @property
    def paths(self) -> list[str]:
        return [item.path for item in self.files]


@dataclass
class AppliedChange:
    path: str
    created: bool
    diff: str


def normalize_path(path: str) -> str:
    cleaned = path.strip().strip('"').replace("\\", "/")
    for prefix in ("a/", "b/", "./"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix) :]
            break
    return cleaned


def _strip_plus(lines: list[str]) -> list[str]:
    non_empty = [line for line in lines if line]
    if non_empty and all(line.startswith("+") for line in non_empty):
        return [line[1:] if line.startswith("+") else line for line in lines]
    return lines


def _parse_hunks(lines: list[str]) -> list[Hunk]:
    hunks: list[Hunk] = []
    current: Hunk | None = None
    for line in lines:
        match = _HUNK_RE.match(line) if line.startswith("@@") else None
        if match:
            old_start = int(match.group(1)) if match.group(1) else None
            current = Hunk(old_start=old_start)
            hunks.append(current)
            continue
        if current is None:
            continue
        if line.startswith("\\"):
            continue
        if line == "":
            current.lines.append((" ", ""))
        elif line[0] in " -+":
            current.lines.append((line[0], line[1:]))
        else:
            raise PatchError(f"Unexpected line in hunk: {line[:60]!r}")
    return hunks


def _section_to_file_patch(operation: str, path: str, body: list[str]) -> FilePatch:
    if operation == "Delete":
        raise PatchError(f"Deleting files is not supported: {path}")
    if operation == "Add":
        return FilePatch(path=path, operation="add", content="\n".join(_strip_plus(body)))
    if any(line.startswith("@@") for line in body):
        return FilePatch(path=path, operation="update", hunks=_parse_hunks(body))
    return FilePatch(path=path, operation="update", content="\n".join(_strip_plus(body)))


def _parse_envelope(text: str) -> Patch:
    lines = text.splitlines()
    try:
        start = next(i for i, line in enumerate(lines) if line.strip() == BEGIN_MARKER)
    except StopIteration as exc:
        raise PatchError("Missing patch envelope") from exc
    end = next((i for i in range(start + 1, len(lines)) if lines[i].strip() == END_MARKER), None)
    if end is None:
        raise PatchError("Patch envelope is not terminated")
    files: list[FilePatch] = []
    header: tuple[str, str] | None = None
    body: list[str] = []
    for line in lines[start + 1 : end]:
        match = _FILE_HEADER_RE.match(line)
        if match:
            if header is not None:
                files.append(_section_to_file_patch(header[0], header[1], body))
            header = (match.group(1), normalize_path(match.group(2)))
            body = []
            continue
        if header is None:
            if line.strip():
                raise PatchError(f"Content before first file header: {line[:60]!r}")
            continue
        if line.startswith("*** End of File"):
            continue
        body.append(line)
    if header is not None:
        files.append(_section_to_file_patch(header[0], header[1], body))
    if not files:
        raise PatchError("Patch envelope contains no files")
    return Patch(files=files)


def _parse_unified(text: str) -> Patch:
    files: list[FilePatch] = []
    lines = text.splitlines()
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            old_path = line[4:].split("\t")[0].strip()
            new_path = lines[index + 1][4:].split("\t")[0].strip()
            index += 2
            body: list[str] = []
            while index < len(lines) and not (
                lines[index].startswith("--- ")
                and index + 1 < len(lines)
                and lines[index + 1].startswith("+++ ")
            ):
                if lines[index].startswith("diff --git") or lines[index].startswith("index "):
                    index += 1
                    continue
                body.append(lines[index])
                index += 1
            created = old_path == "/dev/null"
            hunks = _parse_hunks(body)
            path = normalize_path(new_path)
            if created:
                content = "\n".join(text for hunk in hunks for text in hunk.new_block)
                files.append(FilePatch(path=path, operation="add", content=content))
            else:
                files.append(FilePatch(path=path, operation="update", hunks=hunks))
            continue
        index += 1
    if not files:
        raise PatchError("No file headers found in diff")
    return Patch(files=files)


def parse_patch(text: str, default_path: str | None = None) -> Patch:
    """Parse implementer output into a Patch; raises PatchError when none is found."""
    if BEGIN_MARKER in text:
        return _parse_envelope(text)
    if re.search(r"^--- .+\n\+\+\+ .+", text, re.MULTILINE):
        return _parse_unified(text)
    fence = _FENCE_RE.search(text)
    if fence:
        if not default_path:
            raise PatchError("Code block without a target file")
        body = fence.group(1)
        if BEGIN_MARKER in body:
            return _parse_envelope(body)
        return Patch(files=[FilePatch(path=normalize_path(default_path), operation="update", content=body)])
    raise PatchError("No patch found in implementer output")


def _resolve(root: Path, path: str) -> Path:
    resolved = (root / path).resolve()
    if not resolved.is_relative_to(root.resolve()):
        raise PatchError(f"Path escapes the workspace: {path}")
    return resolved


def _apply_hunks(path: str, original: list[str], hunks: list[Hunk]) -> list[str]:
    lines = list(original)
    offset = 0
    cursor = 0
    for number, hunk in enumerate(hunks, start=1):
        old_block = hunk.old_block
        new_block = hunk.new_block
        position = _locate(lines, old_block, hunk.old_start, offset, cursor)
        if position is None:
            raise PatchError(f"Hunk {number} does not match {path}")
        lines[position : position + len(old_block)] = new_block
        offset += len(new_block) - len(old_block)
        cursor = position + len(new_block)
    return lines


def _matches(lines: list[str], block: list[str], position: int) -> bool:
    if position < 0 or position + len(block) > len(lines):
        return False
    window = lines[position : position + len(block)]
    return all(a.rstrip() == b.rstrip() for a, b in zip(window, block))


def _locate(
    lines: list[str], block: list[str], old_start: int | None, offset: int, cursor: int
) -> int | None:
    if old_start is not None:
        preferred = max(old_start - 1, 0) + offset
        if not block:
            return min(preferred, len(lines))
        if _matches(lines, block, preferred):
            return preferred
    if not block:
        return len(lines)
    for position in range(cursor, len(lines) - len(block) + 1):
        if _matches(lines, block, position):
            return position
    return None


def apply_patch(root: str | Path, patch: Patch) -> list[AppliedChange]:
    """Apply every file section; nothing is written unless all sections apply."""
    root_path = Path(root)
    staged: list[tuple[Path, str, str, bool]] = []
    for item in patch.files:
        target = _resolve(root_path, item.path)
        exists = target.is_file()
        before = target.read_text(encoding="utf-8") if exists else ""
        if item.content is not None:
            after = item.content if item.content.endswith("\n") else item.content + "\n"
        else:
            if not exists:
                raise PatchError(f"Cannot update missing file: {item.path}")
            new_lines = _apply_hunks(item.path, before.splitlines(), item.hunks)
            after = "\n".join(new_lines)
            if before.endswith("\n") or not before:
                after += "\n"
        staged.append((target, item.path, after, not exists))

    applied: list[AppliedChange] = []
    for target, path, after, created in staged:
        before = "" if created else target.read_text(encoding="utf-8")
        diff = "".join(
            difflib.unified_diff(
                before.splitlines(keepends=True),
                after.splitlines(keepends=True),
                fromfile="/dev/null" if created else f"a/{path}",
                tofile=f"b/{path}",
            )
        )
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(after, encoding="utf-8")
        applied.append(AppliedChange(path=path, created=created, diff=diff))
    return applied
