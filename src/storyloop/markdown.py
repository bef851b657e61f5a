"""Line-level markdown helpers: ATX headings and fenced code blocks."""

import re

_ATX_HEADING_RE = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?(?:[ \t]+#+)?[ \t]*$")
_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")


def parse_heading(line: str) -> tuple[int, str] | None:
    """Return (level, text) if the line is an ATX heading, else None.

    Pure function. Trailing closing hashes and surrounding whitespace are not
    part of the text, so '## Status ##' reads as (2, 'Status').
    """
    m = _ATX_HEADING_RE.match(line.rstrip("\r\n"))
    if not m:
        return None
    return len(m.group(1)), (m.group(2) or "").strip()


def code_line_flags(lines: list[str]) -> list[bool]:
    """Flag every line that belongs to a fenced code block (fences included).

    A fence closes on a line of the same character at least as long as the
    opening run. An unclosed fence runs to the end of the document.
    """
    flags = []
    open_fence = ""
    for line in lines:
        m = _FENCE_RE.match(line)
        if open_fence:
            flags.append(True)
            if m and m.group(1)[0] == open_fence[0] and len(m.group(1)) >= len(open_fence):
                if not line.strip().lstrip(open_fence[0]):
                    open_fence = ""
        elif m:
            flags.append(True)
            open_fence = m.group(1)
        else:
            flags.append(False)
    return flags


def find_heading(lines: list[str], level: int, text: str, code_flags: list[bool] | None = None) -> int:
    """Return the index of the first heading with this exact level and text, or -1."""
    if code_flags is None:
        code_flags = code_line_flags(lines)
    for i, line in enumerate(lines):
        if code_flags[i]:
            continue
        if parse_heading(line) == (level, text):
            return i
    return -1


def next_heading_index(lines: list[str], start: int, code_flags: list[bool]) -> int:
    """Return the index of the first heading of any level at or after start, or len(lines)."""
    for i in range(start, len(lines)):
        if not code_flags[i] and parse_heading(lines[i]) is not None:
            return i
    return len(lines)
