"""Repository snapshot collection through git."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol

from patchforge.safety.sandbox import CommandResult
from patchforge.state import CommitInfo, GitInfo, RepoSnapshot
from patchforge.util.logging import get_logger


_BINARY_RE = re.compile(
    r"\.(png|jpg|jpeg|gif|ico|ttf|woff|woff2|eot|mp3|mp4|mov|zip|tar\.gz|pdf|pyc|so|dylib)$",
    re.IGNORECASE,
)
_COMMIT_SEP = "\x1f"

logger = get_logger("patchforge.repo")


class Runner(Protocol):
    def exec(self, cmd: str, timeout: float | None = None) -> CommandResult: ...


def keep_path(path: str) -> bool:
    if not path or _BINARY_RE.search(path):
        return False
    return "node_modules/" not in path and ".git/" not in path


def collect_repo_snapshot(root: str | Path, runner: Runner, max_files: int = 200) -> RepoSnapshot:
    """Snapshot tracked files and git status; non-git directories yield an empty one."""
    root_path = str(Path(root).resolve())
    probe = runner.exec("git rev-parse --is-inside-work-tree", timeout=10)
    if probe.exit_code != 0 or probe.stdout.strip() != "true":
        logger.info("%s is not a git repository; using an empty snapshot", root_path)
        return RepoSnapshot(root_path=root_path)

    listing = runner.exec("git ls-files", timeout=30)
    files = [line for line in listing.stdout.splitlines() if keep_path(line.strip())][:max_files]
    branch = runner.exec("git rev-parse --abbrev-ref HEAD", timeout=10).stdout.strip()
    status = runner.exec("git status --porcelain", timeout=30)
    git = GitInfo(branch=branch, is_clean=status.exit_code == 0 and not status.stdout.strip())

    log = runner.exec("git log -1 --pretty=format:%H%x1f%s%x1f%an%x1f%ad", timeout=10)
    parts = log.stdout.strip().split(_COMMIT_SEP)
    if log.exit_code == 0 and len(parts) == 4:
        git.last_commit = CommitInfo(hash=parts[0], message=parts[1], author=parts[2], date=parts[3])
    else:
        logger.debug("No commit information available for %s", root_path)
    return RepoSnapshot(root_path=root_path, files=files, git=git)
