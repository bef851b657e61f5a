"""Git status helpers: working-tree changes, remote sync, last commit."""

import re
from dataclasses import dataclass, field

from storyloop.utils import run_cmd


class GitError(RuntimeError):
    """A git query failed."""


@dataclass
class GitStatus:
    """Working-tree snapshot for one repository."""

    staged: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    ahead: int = 0
    behind: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.staged or self.modified or self.untracked)


@dataclass
class PushStatus:
    ahead: int
    behind: int
    synced: bool


_BRANCH_AB_RE = re.compile(r"\[(?:ahead (\d+))?(?:, )?(?:behind (\d+))?\]")


def parse_porcelain_status(output: str) -> GitStatus:
    """Parse 'git status --porcelain=v1 --branch' output.

    Pure function. The '## branch...upstream [ahead N, behind M]' header
    gives the sync counts; every other line is 'XY path' where X is the index
    state and Y the working-tree state.
    """
    status = GitStatus()
    for line in output.splitlines():
        if not line.strip():
            continue
        if line.startswith("## "):
            m = _BRANCH_AB_RE.search(line)
            if m:
                status.ahead = int(m.group(1) or 0)
                status.behind = int(m.group(2) or 0)
            continue
        if len(line) < 4:
            continue
        index_state, work_state, path = line[0], line[1], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')
        status.files.append(f"{index_state}{work_state} {path}")
        if index_state == "?" and work_state == "?":
            status.untracked.append(path)
            continue
        if index_state not in (" ", "?", "!"):
            status.staged.append(path)
        if work_state not in (" ", "?", "!"):
            status.modified.append(path)
    return status


def _git(project_dir: str, *args: str) -> str:
    """Run a git command in project_dir and return stdout. Raises GitError on failure."""
    try:
        result = run_cmd(["git", "-C", project_dir, *args], capture=True)
    except FileNotFoundError as e:
        raise GitError("git executable not found") from e
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        raise GitError(f"git {' '.join(args)} failed: {detail[:200]}")
    return result.stdout


def get_git_status(project_dir: str) -> GitStatus:
    """Return the working-tree status and ahead/behind counts for project_dir."""
    return parse_porcelain_status(
        _git(project_dir, "status", "--porcelain=v1", "--branch", "--untracked-files=all")
    )


def has_uncommitted_changes(project_dir: str) -> bool:
    """True if any staged, modified, or untracked file exists."""
    return get_git_status(project_dir).has_changes


def check_push_status(project_dir: str) -> PushStatus:
    """Return how far the current branch is ahead of / behind its upstream."""
    status = parse_porcelain_status(_git(project_dir, "status", "--porcelain=v1", "--branch"))
    return PushStatus(
        ahead=status.ahead,
        behind=status.behind,
        synced=status.ahead == 0 and status.behind == 0,
    )


def get_head_sha(project_dir: str) -> str:
    """Return HEAD's SHA, or empty string when there is no commit yet."""
    try:
        return _git(project_dir, "rev-parse", "HEAD").strip()
    except GitError:
        return ""


def get_last_commit_message(project_dir: str) -> str:
    """Return the full message of the HEAD commit, or empty string."""
    try:
        return _git(project_dir, "log", "-1", "--format=%B").strip()
    except GitError:
        return ""
