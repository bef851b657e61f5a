"""Agent instruction templates.

Each constant is a format string. Use .format() to interpolate variables
before passing to run_agent().
"""

CREATE_DRAFT_PROMPT = "/BMad:agents:sm *draft"

DEVELOP_TASK_PROMPT = (
    "/BMad:agents:dev *develop task {task_id} from story {story_name}. "
    "Start developing immediately without asking questions. "
    "You have access to MCP servers including: context7 "
    "(use to retrieve up-to-date library documentation)"
)

QA_REVIEW_PROMPT = "/BMad:agents:qa *review {story_name}"

COMMIT_PROMPT = "/commit"


# Labels recorded in the per-story command log and shown in notifications.
COMMAND_DRAFT = "draft"
COMMAND_DEV = "dev"
COMMAND_QA = "qa"
COMMAND_COMMIT = "commit"
