"""Story discovery and status marker reading/writing under docs/stories."""

import os
import re
from dataclasses import dataclass

from storyloop.config import STATUS_HEADING, STORIES_SUBDIR
from storyloop.markdown import code_line_flags, find_heading
from storyloop.tasks import Task, parse_tasks_from_story
from storyloop.utils import log


@dataclass
class Story:
    """One story document as read from disk."""

    name: str
    path: str
    content: str
    mtime: float
    status: str | None = None


# Lines that open some other block and so cannot be a status paragraph.
_NON_PARAGRAPH_RE = re.compile(
    r"^ {0,3}(?:[-*+](?:\s|$)|\d{1,9}[.)](?:\s|$)|>|<|#{1,6}(?:\s|$)|`{3,}|~{3,}|(?:[-*_]\s*){3,}$)"
)
_SETEXT_UNDERLINE_RE = re.compile(r"^ {0,3}(?:=+|-+)[ \t]*\r?\n?$")


def _is_paragraph_line(line: str) -> bool:
    body = line.rstrip("\r\n")
    if not body.strip():
        return False
    if len(body) - len(body.lstrip(" ")) > 3 or body.startswith("\t"):
        return False  # indented code
    return not _NON_PARAGRAPH_RE.match(body)


def _find_status_line(lines: list[str]) -> int:
    """Return the index of the status value line, or -1 if the marker is malformed.

    The value is the first block after the first '## Status' heading and must
    be a single-line paragraph.
    """
    code_flags = code_line_flags(lines)
    heading = find_heading(lines, 2, STATUS_HEADING, code_flags)
    if heading == -1:
        return -1
    for i in range(heading + 1, len(lines)):
        if not lines[i].strip():
            continue
        if code_flags[i] or not _is_paragraph_line(lines[i]):
            return -1
        following = lines[i + 1] if i + 1 < len(lines) else ""
        if _SETEXT_UNDERLINE_RE.match(following):
            return -1  # the line is a heading, not a paragraph
        if _is_paragraph_line(following):
            return -1  # multi-line paragraph
        return i
    return -1


def extract_status(content: str) -> str | None:
    """Return the story's status value, or None if it has no status marker.

    Pure function.
    """
    lines = content.splitlines(keepends=True)
    index = _find_status_line(lines)
    if index == -1:
        return None
    return lines[index].strip()


def replace_status(content: str, new_status: str) -> str | None:
    """Return content with the status value replaced, or None if there is no marker.

    Pure function. Only the value text changes: its indentation, trailing
    whitespace, line ending and every other line are kept byte for byte.
    """
    if not new_status.strip() or "\n" in new_status or "\r" in new_status:
        raise ValueError(f"Invalid status value: {new_status!r}")
    lines = content.splitlines(keepends=True)
    index = _find_status_line(lines)
    if index == -1:
        return None
    line = lines[index]
    body = line.rstrip("\r\n")
    ending = line[len(body):]
    leading = body[: len(body) - len(body.lstrip())]
    trailing = body[len(body.rstrip()):]
    lines[index] = f"{leading}{new_status.strip()}{trailing}{ending}"
    return "".join(lines)


def stories_dir(project_dir: str) -> str:
    return os.path.join(project_dir, STORIES_SUBDIR)


def load_story(path: str) -> Story | None:
    """Read one story file. Returns None (and logs) if it cannot be read."""
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            content = f.read()
        mtime = os.path.getmtime(path)
    except (OSError, UnicodeDecodeError) as e:
        log("workflow", f"WARNING: Could not read story {path}: {e}", style="yellow")
        return None
    return Story(
        name=os.path.basename(path),
        path=path,
        content=content,
        mtime=mtime,
        status=extract_status(content),
    )


def list_stories(project_dir: str) -> list[Story]:
    """Return every story in docs/stories, newest first.

    Returns [] when the directory doesn't exist.
    """
    directory = stories_dir(project_dir)
    if not os.path.isdir(directory):
        return []
    stories = []
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if not name.endswith(".md") or not os.path.isfile(path):
            continue
        story = load_story(path)
        if story is not None:
            stories.append(story)
    stories.sort(key=lambda s: s.mtime, reverse=True)
    return stories


def find_story_by_status(project_dir: str, status: str) -> Story | None:
    """Return the most recently modified story whose status is exactly *status*."""
    matching = [s for s in list_stories(project_dir) if s.status == status]
    if not matching:
        return None
    return max(matching, key=lambda s: s.mtime)


def get_story_with_tasks(project_dir: str, status: str) -> tuple[Story, list[Task]] | None:
    """Find the newest story with *status* and parse its task tree."""
    story = find_story_by_status(project_dir, status)
    if story is None:
        return None
    return story, parse_tasks_from_story(story.content)


def update_story_status(path: str, content: str, new_status: str) -> bool:
    """Rewrite the story's status value on disk.

    Returns False without writing when the content has no status marker.
    """
    new_content = replace_status(content, new_status)
    if new_content is None:
        return False
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(new_content)
    return True
