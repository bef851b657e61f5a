"""Story workflow: the per-tick priority rules and the continuous polling loop."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from storyloop.agent import AgentOptions, AgentResult, run_agent
from storyloop.config import (
    ERROR_PAUSE_SECONDS,
    MAX_IDLE_TICKS,
    NO_WORK_PAUSE_SECONDS,
    STATUS_APPROVED,
    STATUS_DONE,
    STATUS_DRAFT,
    STATUS_READY_FOR_REVIEW,
)
from storyloop.git_helpers import (
    GitError,
    GitStatus,
    get_git_status,
    get_head_sha,
    get_last_commit_message,
    has_uncommitted_changes,
)
from storyloop.prompts import (
    COMMAND_COMMIT,
    COMMAND_DEV,
    COMMAND_DRAFT,
    COMMAND_QA,
    COMMIT_PROMPT,
    CREATE_DRAFT_PROMPT,
    DEVELOP_TASK_PROMPT,
    QA_REVIEW_PROMPT,
)
from storyloop.stories import (
    Story,
    find_story_by_status,
    get_story_with_tasks,
    load_story,
    update_story_status,
)
from storyloop.tasks import get_next_task
from storyloop.utils import log
from storyloop.webhook import CommandRecord, StoryReport, send_story_webhook


@dataclass
class WorkflowSettings:
    """Fixed settings for one workflow run."""

    project_dir: str
    agent_options: AgentOptions = field(default_factory=AgentOptions)
    create_drafts: bool = True


@dataclass
class StoryCommandLog:
    """Commands run for the story currently in progress.

    Owned by the loop and handed to every tick; reset after the story's
    completion notification is sent.
    """

    commands: list[CommandRecord] = field(default_factory=list)
    git_before: GitStatus | None = None

    def reset(self) -> None:
        self.commands = []
        self.git_before = None


# ============================================
# Helpers
# ============================================


def _snapshot_git(project_dir: str) -> GitStatus | None:
    """Capture working-tree status for the notification. None if git fails."""
    try:
        return get_git_status(project_dir)
    except GitError as e:
        log("workflow", f"WARNING: Could not read git status: {e}", style="yellow")
        return None


def _dispatch(
    settings: WorkflowSettings, command_log: StoryCommandLog, label: str, instruction: str,
) -> AgentResult:
    """Run one agent instruction and record it in the command log."""
    if not command_log.commands and command_log.git_before is None:
        command_log.git_before = _snapshot_git(settings.project_dir)

    head_before = get_head_sha(settings.project_dir) if label == COMMAND_COMMIT else ""
    result = run_agent(instruction, settings.project_dir, settings.agent_options)

    commit_message = None
    if label == COMMAND_COMMIT:
        head_after = get_head_sha(settings.project_dir)
        if head_after and head_after != head_before:
            commit_message = get_last_commit_message(settings.project_dir) or None

    command_log.commands.append(CommandRecord(
        command=label,
        duration_ms=result.duration_ms,
        timestamp=datetime.now().isoformat(timespec="seconds"),
        exit_code=result.exit_code,
        commit_message=commit_message,
    ))

    if result.timed_out:
        log("workflow", f"[{label}] Agent timed out after {result.duration_ms / 1000:.1f}s.", style="yellow")
    elif result.exit_code != 0:
        log("workflow", f"[{label}] Agent exited with code {result.exit_code}.", style="yellow")
    return result


def _set_status(story: Story, new_status: str) -> bool:
    if update_story_status(story.path, story.content, new_status):
        log("workflow", f"{story.name}: status updated to {new_status}", style="cyan")
        return True
    log("workflow", f"WARNING: {story.name} has no status marker; left unchanged.", style="yellow")
    return False


# ============================================
# Priority rules (first one that acts ends the tick)
# ============================================


def approve_draft(settings: WorkflowSettings, command_log: StoryCommandLog) -> bool:
    """Draft -> Approved."""
    story = find_story_by_status(settings.project_dir, STATUS_DRAFT)
    if story is None:
        return False
    log("workflow", f"Found draft: {story.name}", style="green")
    _set_status(story, STATUS_APPROVED)
    return True


def develop_approved_story(settings: WorkflowSettings, command_log: StoryCommandLog) -> bool:
    """Develop the next open task of the approved story, or send it to review."""
    found = get_story_with_tasks(settings.project_dir, STATUS_APPROVED)
    if found is None:
        return False
    story, tasks = found

    task = get_next_task(tasks)
    if task is None:
        log("workflow", f"All tasks completed for {story.name}, moving to {STATUS_READY_FOR_REVIEW}", style="green")
        _set_status(story, STATUS_READY_FOR_REVIEW)
        return True

    log("workflow", f"Developing task {task.id}: {task.name}", style="green")
    _dispatch(
        settings, command_log, COMMAND_DEV,
        DEVELOP_TASK_PROMPT.format(task_id=task.id, story_name=story.name),
    )
    return True


def review_ready_story(settings: WorkflowSettings, command_log: StoryCommandLog) -> bool:
    """Review, mark Done, commit, and report the finished story."""
    story = find_story_by_status(settings.project_dir, STATUS_READY_FOR_REVIEW)
    if story is None:
        return False

    log("workflow", f"QA reviewing: {story.name}", style="green")
    _dispatch(settings, command_log, COMMAND_QA, QA_REVIEW_PROMPT.format(story_name=story.name))

    # The review may have edited the story; write the status over what is on disk now.
    _set_status(load_story(story.path) or story, STATUS_DONE)

    _dispatch(settings, command_log, COMMAND_COMMIT, COMMIT_PROMPT)

    try:
        send_story_webhook(StoryReport(
            story_name=story.name,
            project_dir=settings.project_dir,
            commands=list(command_log.commands),
            git_before=command_log.git_before,
            git_after=_snapshot_git(settings.project_dir),
        ))
    finally:
        # The next story starts with an empty log even if the notification blew up.
        command_log.reset()

    log("workflow", f"Story {story.name} completed!", style="bold green")
    return True


def draft_new_story(settings: WorkflowSettings, command_log: StoryCommandLog) -> bool:
    """No draft anywhere: commit leftovers, then ask for a new draft."""
    if not settings.create_drafts:
        return False
    if find_story_by_status(settings.project_dir, STATUS_DRAFT) is not None:
        return False

    if has_uncommitted_changes(settings.project_dir):
        log("workflow", "Committing changes before creating new draft...", style="cyan")
        _dispatch(settings, command_log, COMMAND_COMMIT, COMMIT_PROMPT)

    log("workflow", "Creating new draft...", style="green")
    _dispatch(settings, command_log, COMMAND_DRAFT, CREATE_DRAFT_PROMPT)
    return True


def commit_pending_changes(settings: WorkflowSettings, command_log: StoryCommandLog) -> bool:
    """Commit whatever is left in the working tree."""
    if not has_uncommitted_changes(settings.project_dir):
        return False
    log("workflow", "No pending stories found. Committing uncommitted changes...", style="cyan")
    _dispatch(settings, command_log, COMMAND_COMMIT, COMMIT_PROMPT)
    log("workflow", "Uncommitted changes committed.", style="cyan")
    return True


WorkflowRule = Callable[[WorkflowSettings, StoryCommandLog], bool]

WORKFLOW_RULES: tuple[WorkflowRule, ...] = (
    approve_draft,
    develop_approved_story,
    review_ready_story,
    draft_new_story,
    commit_pending_changes,
)


def run_story_tick(settings: WorkflowSettings, command_log: StoryCommandLog) -> bool:
    """Evaluate the rules in priority order. Returns True if one of them did work."""
    log("workflow", "Checking for stories to process...", style="dim")
    for rule in WORKFLOW_RULES:
        if rule(settings, command_log):
            return True
    return False


# ============================================
# Continuous loop
# ============================================


def run_continuous_workflow(
    settings: WorkflowSettings,
    tick: Callable[[WorkflowSettings, StoryCommandLog], bool] = run_story_tick,
) -> int:
    """Run ticks until MAX_IDLE_TICKS consecutive ticks find no work.

    A tick that raises is logged and followed by a short pause; it neither
    stops the loop nor counts toward the idle limit. Returns the number of
    ticks that did work.
    """
    log("workflow", "Starting continuous workflow...", style="bold cyan")
    command_log = StoryCommandLog()
    total_completed = 0
    idle_ticks = 0

    while idle_ticks < MAX_IDLE_TICKS:
        try:
            work_done = tick(settings, command_log)
        except Exception as e:
            log("workflow", f"Error: {e}", style="bold red")
            time.sleep(ERROR_PAUSE_SECONDS)
            continue

        if work_done:
            total_completed += 1
            idle_ticks = 0
            log("workflow", f"\nTotal completed: {total_completed}", style="cyan")
            continue

        idle_ticks += 1
        log("workflow", f"No work found ({idle_ticks}/{MAX_IDLE_TICKS})", style="dim")
        if idle_ticks < MAX_IDLE_TICKS:
            time.sleep(NO_WORK_PAUSE_SECONDS)

    log("workflow", f"\nWorkflow drained. Completed {total_completed} actions.", style="bold green")
    return total_completed
