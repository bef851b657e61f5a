"""Configuration constants for the story lifecycle runner.

Values that users tune live in environment variables (optionally loaded
from a .env file by the CLI); everything else is a module constant.
"""

import os

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Story layout
# ---------------------------------------------------------------------------

STORIES_SUBDIR = os.path.join("docs", "stories")

STATUS_HEADING = "Status"
TASKS_HEADING = "Tasks / Subtasks"

STATUS_DRAFT = "Draft"
STATUS_APPROVED = "Approved"
STATUS_READY_FOR_REVIEW = "Ready for Review"
STATUS_DONE = "Done"

STORY_STATUSES = (STATUS_DRAFT, STATUS_APPROVED, STATUS_READY_FOR_REVIEW, STATUS_DONE)


# ---------------------------------------------------------------------------
# Driver loop
# ---------------------------------------------------------------------------

MAX_IDLE_TICKS = 3
NO_WORK_PAUSE_SECONDS = 30
ERROR_PAUSE_SECONDS = 10


# ---------------------------------------------------------------------------
# Agent subprocess
# ---------------------------------------------------------------------------

AGENT_EXECUTABLE = "claude"

# Liveness: after the first output chunk, a call is hung once it has run for
# AGENT_MIN_RUNTIME_SECONDS and has been silent for AGENT_IDLE_TIMEOUT_SECONDS.
AGENT_MIN_RUNTIME_SECONDS = 30.0
AGENT_IDLE_TIMEOUT_SECONDS = 5.0
AGENT_POLL_INTERVAL_SECONDS = 1.0

# Exit code reported when an agent call is killed by the liveness check.
AGENT_TIMEOUT_EXIT_CODE = -99

AGENT_TERMINAL_COLS = 80
AGENT_TERMINAL_ROWS = 30


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------

WEBHOOK_URL_ENV = "DISCORD_WEBHOOK_URL"
MODEL_ENV = "STORYLOOP_MODEL"
CLAUDE_PATH_ENV = "STORYLOOP_CLAUDE_PATH"
LOGS_DIR_ENV = "STORYLOOP_LOGS_DIR"

DEFAULT_LOGS_DIR = os.path.join("~", ".storyloop", "logs")

WEBHOOK_TIMEOUT_SECONDS = 10.0
WEBHOOK_USERNAME = "Story Workflow Bot"


def load_environment(dotenv_path: str | None = None) -> bool:
    """Load variables from a .env file without overriding the real environment.

    Returns True if a file was found and loaded.
    """
    return load_dotenv(dotenv_path or os.path.join(os.getcwd(), ".env"), override=False)
