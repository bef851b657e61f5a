"""Story completion notifications posted to a Discord-compatible webhook."""

import os
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from storyloop.config import WEBHOOK_TIMEOUT_SECONDS, WEBHOOK_URL_ENV, WEBHOOK_USERNAME
from storyloop.git_helpers import GitError, GitStatus, PushStatus, check_push_status
from storyloop.prompts import COMMAND_COMMIT
from storyloop.utils import log

_EMBED_COLOR = 0x00FF00
_COMMIT_MESSAGE_LIMIT = 100


@dataclass
class CommandRecord:
    """One agent or commit invocation made while processing a story."""

    command: str
    duration_ms: int
    timestamp: str
    exit_code: int
    commit_message: str | None = None


@dataclass
class StoryReport:
    """Everything the completion notification summarizes."""

    story_name: str
    project_dir: str
    commands: list[CommandRecord] = field(default_factory=list)
    git_before: GitStatus | None = None
    git_after: GitStatus | None = None


def find_commit_message(commands: list[CommandRecord]) -> str:
    """Return the message of the latest commit recorded, or a placeholder."""
    for record in reversed(commands):
        if record.command == COMMAND_COMMIT and record.commit_message:
            return record.commit_message
    return "No commit message found"


def _format_time(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp).strftime("%H:%M:%S")
    except ValueError:
        return timestamp


def _git_changes_text(before: GitStatus | None, after: GitStatus | None) -> str:
    if before is None or after is None:
        return "No git changes tracked"
    added = len(after.files) - len(before.files)
    return f"📁 Files: {len(before.files)} → {len(after.files)}\n📈 Added: {added}"


def _push_status_text(push: PushStatus) -> str:
    if push.synced:
        return "✅ All changes pushed"
    return f"⏳ {push.ahead} commits ahead"


def build_story_payload(report: StoryReport, push: PushStatus, now: datetime | None = None) -> dict:
    """Build the webhook JSON body for a completed story.

    Pure function: takes the report and remote sync status, returns a dict
    with one embed.
    """
    now = now or datetime.now()
    total_ms = sum(cmd.duration_ms for cmd in report.commands)
    total_minutes = total_ms / 1000 / 60

    commit_message = find_commit_message(report.commands)
    if len(commit_message) > _COMMIT_MESSAGE_LIMIT:
        commit_message = commit_message[:_COMMIT_MESSAGE_LIMIT] + "..."

    command_fields = [
        {
            "name": f"🔧 {cmd.command}",
            "value": f"⏱️ {cmd.duration_ms / 1000:.2f}s\n🕐 {_format_time(cmd.timestamp)}",
            "inline": True,
        }
        for cmd in report.commands
    ]

    embed = {
        "title": "📖 Story Completed!",
        "description": (
            f"**{report.story_name}** has been successfully completed!\n\n"
            f"🚀 **Project:** {os.path.basename(os.path.normpath(report.project_dir))}"
        ),
        "color": _EMBED_COLOR,
        "fields": [
            {"name": "⏰ Story Duration", "value": f"{total_minutes:.2f} minutes", "inline": True},
            {"name": "🔧 Commands Executed", "value": f"{len(report.commands)} commands", "inline": True},
            {"name": "📊 Git Changes", "value": _git_changes_text(report.git_before, report.git_after), "inline": True},
            {"name": "🔄 Push Status", "value": _push_status_text(push), "inline": True},
            {"name": "💬 Commit Message", "value": commit_message, "inline": False},
            *command_fields,
        ],
        "footer": {"text": f"Story Workflow • Completed at {now.strftime('%Y-%m-%d %H:%M:%S')}"},
        "timestamp": now.astimezone().isoformat(),
    }
    return {"username": WEBHOOK_USERNAME, "embeds": [embed]}


def send_story_webhook(report: StoryReport) -> bool:
    """Post the completion summary. Returns True if delivered.

    A missing webhook URL is a logged no-op. Delivery failures are logged and
    never raised.
    """
    webhook_url = os.environ.get(WEBHOOK_URL_ENV, "")
    if not webhook_url:
        log("webhook", f"No webhook configured ({WEBHOOK_URL_ENV} is not set). Skipping notification.", style="yellow")
        return False

    try:
        push = check_push_status(report.project_dir)
    except GitError as e:
        log("webhook", f"Could not check git push status: {e}", style="yellow")
        push = PushStatus(ahead=0, behind=0, synced=False)

    payload = build_story_payload(report, push)
    try:
        response = httpx.post(webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        log("webhook", f"Error sending webhook: {e}", style="red")
        return False

    if response.is_success:
        log("webhook", f"Story summary for {report.story_name} sent.", style="green")
        return True
    log("webhook", f"Webhook rejected: {response.status_code} {response.reason_phrase}", style="red")
    return False
