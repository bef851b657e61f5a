"""Task-tree parsing and next-task selection for a story's checklist section."""

import re
from dataclasses import dataclass, field, replace

from storyloop.config import TASKS_HEADING
from storyloop.markdown import code_line_flags, find_heading, next_heading_index


@dataclass
class Task:
    """One checklist entry. Ids reflect position in the document (e.g. '2.1.3')."""

    id: str
    name: str
    completed: bool
    subtasks: list["Task"] = field(default_factory=list)


# List item: indentation, bullet or ordered marker, spacing, item text.
_LIST_ITEM_RE = re.compile(r"^( *)([-*+]|\d{1,9}[.)])( +|$)(.*)$")

# Checkbox at the start of the item text: '[ ] name' or '[x] name'.
_CHECKBOX_RE = re.compile(r"^\[([ xX])\]\s*(.+)$")


@dataclass
class _OpenItem:
    """A list item whose nested lists may still receive children."""

    id: str
    content_indent: int
    task: Task | None
    count: int = 0
    list_kind: str = ""


def _content_indent(indent: str, marker: str, spacing: str) -> int:
    """Column where the item's content (and its nested lists) begins."""
    gap = len(spacing)
    if gap == 0 or gap > 4:
        gap = 1
    return len(indent) + len(marker) + gap


def parse_checkbox(text: str) -> tuple[bool, str] | None:
    """Return (completed, name) if the item text starts with a checkbox, else None.

    Pure function.
    """
    m = _CHECKBOX_RE.match(text.strip())
    if not m:
        return None
    return m.group(1) != " ", m.group(2).strip()


def _section_lines(content: str) -> list[str]:
    """Return the lines between the tasks heading and the next heading, or []."""
    lines = content.splitlines()
    code_flags = code_line_flags(lines)
    heading = find_heading(lines, 2, TASKS_HEADING, code_flags)
    if heading == -1:
        return []
    end = next_heading_index(lines, heading + 1, code_flags)
    section = []
    for i in range(heading + 1, end):
        # Fenced code never contributes list items; keep it as a blank line so
        # it still separates blocks.
        section.append("" if code_flags[i] else lines[i])
    return section


def parse_tasks_from_story(content: str) -> list[Task]:
    """Parse the '## Tasks / Subtasks' section into a task tree.

    Pure function: takes raw markdown content, returns root tasks in
    document order. Returns [] when the section is missing.

    Nesting follows list indentation. A list item that does not start with a
    checkbox is skipped together with everything nested under it, but it
    still takes its position, so its siblings keep their structural ids.
    A paragraph that ends a list, or a switch to a different bullet character
    or ordered delimiter, starts a new list and so restarts numbering.
    """
    roots: list[Task] = []
    root = _OpenItem(id="", content_indent=0, task=None)
    stack: list[_OpenItem] = []
    previous_blank = False

    for raw_line in _section_lines(content):
        line = raw_line.expandtabs(4)
        if not line.strip():
            previous_blank = True
            continue

        m = _LIST_ITEM_RE.match(line)
        indent = len(line) - len(line.lstrip(" "))

        if not m:
            # A paragraph after a blank line closes every item it is not
            # indented under. Without a blank line it is a lazy continuation.
            if previous_blank:
                while stack and indent < stack[-1].content_indent:
                    stack.pop()
                if not stack:
                    root.count = 0
            previous_blank = False
            continue
        previous_blank = False

        while stack and indent < stack[-1].content_indent:
            stack.pop()

        parent = stack[-1] if stack else root
        # A different bullet character or ordered delimiter starts a new list.
        kind = m.group(2)[-1]
        if kind != parent.list_kind:
            parent.count = 0
            parent.list_kind = kind
        parent.count += 1
        task_id = f"{parent.id}.{parent.count}" if parent.id else str(parent.count)

        task = None
        parent_skipped = parent is not root and parent.task is None
        checkbox = parse_checkbox(m.group(4))
        if checkbox and not parent_skipped:
            completed, name = checkbox
            task = Task(id=task_id, name=name, completed=completed)
            if parent is root:
                roots.append(task)
            else:
                parent.task.subtasks.append(task)

        stack.append(_OpenItem(
            id=task_id,
            content_indent=_content_indent(m.group(1), m.group(2), m.group(3)),
            task=task,
        ))

    return roots


def get_next_task(tasks: list[Task]) -> Task | None:
    """Return the next task to work on, or None when every root is complete.

    Depth-first in document order. A completed task is skipped without looking
    at its subtasks. For the first incomplete task, its deepest unresolved
    descendant wins; the task itself is returned when it has none.
    """
    for task in tasks:
        if not task.completed:
            return get_next_task(task.subtasks) or task
    return None


def get_uncompleted_tasks(tasks: list[Task]) -> list[Task]:
    """Return a pruned copy of the tree holding all outstanding work.

    Unlike get_next_task, this descends into completed tasks: a completed
    parent is kept when any of its descendants is still open.
    """
    uncompleted = []
    for task in tasks:
        open_subtasks = get_uncompleted_tasks(task.subtasks)
        if not task.completed or open_subtasks:
            uncompleted.append(replace(task, subtasks=open_subtasks))
    return uncompleted


def count_tasks(tasks: list[Task]) -> tuple[int, int]:
    """Return (done, total) across the whole tree."""
    done = total = 0
    for task in tasks:
        total += 1
        if task.completed:
            done += 1
        sub_done, sub_total = count_tasks(task.subtasks)
        done += sub_done
        total += sub_total
    return done, total
