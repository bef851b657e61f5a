"""Version information with git commit tracking.

Reports the package version plus the commit date and hash of the storyloop
checkout itself, so an editable install still tells you what is running.
"""

import os
import subprocess

PACKAGE_VERSION = "0.3.0"

_REPO_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _git_output(*args: str) -> str | None:
    """Stdout of a git command run against this checkout, or None if git fails."""
    try:
        result = subprocess.run(
            ["git", "-C", _REPO_DIR, *args],
            capture_output=True, text=True, timeout=5, check=True,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return result.stdout.strip()


def format_version(commit: str | None, date: str | None, dirty: bool) -> str:
    """Pure function: '0.3.0 (2026-10-17 g3a7f2c1+dirty)', or the bare version outside git."""
    if not commit:
        return PACKAGE_VERSION
    suffix = "+dirty" if dirty else ""
    return f"{PACKAGE_VERSION} ({date or 'unknown'} g{commit}{suffix})"


def get_version() -> str:
    commit = _git_output("rev-parse", "--short", "HEAD")
    date = _git_output("log", "-1", "--format=%cs")
    dirty = bool(_git_output("status", "--porcelain"))
    return format_version(commit, date, dirty)
