"""Tests for the workflow rules and the continuous loop.

The agent, git, and webhook seams are monkeypatched; story files are real
files under tmp_path.
"""

import os

import pytest

from storyloop.agent import AgentOptions, AgentResult
from storyloop.git_helpers import GitError, GitStatus, PushStatus
from storyloop.stories import extract_status
from storyloop.webhook import CommandRecord, send_story_webhook
from storyloop.workflow import (
    StoryCommandLog,
    WorkflowSettings,
    run_continuous_workflow,
    run_story_tick,
)


def _story(status: str, tasks: str = "- [ ] First task\n") -> str:
    return f"# Story\n\n## Status\n\n{status}\n\n## Tasks / Subtasks\n\n{tasks}"


def _write(project_dir, name: str, content: str, mtime: float | None = None) -> str:
    stories = project_dir / "docs" / "stories"
    stories.mkdir(parents=True, exist_ok=True)
    path = stories / name
    path.write_text(content, encoding="utf-8")
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path)


def _status_of(path: str) -> str | None:
    with open(path, encoding="utf-8") as f:
        return extract_status(f.read())


class FakeEnvironment:
    """Scripted stand-ins for the agent, git, and webhook."""

    def __init__(self, dirty: bool = False):
        self.instructions: list[str] = []
        self.dirty = dirty
        self.head = "aaa"
        self.commit_message = "feat: password reset"
        self.reports = []
        self.on_agent = None

    def run_agent(self, instruction, working_dir, options=None):
        self.instructions.append(instruction)
        if instruction == "/commit":
            self.head = "bbb"
            self.dirty = False
        if self.on_agent is not None:
            self.on_agent(instruction)
        return AgentResult(output="ok", exit_code=0, duration_ms=1500, command=instruction)

    def has_uncommitted_changes(self, project_dir):
        return self.dirty

    def get_git_status(self, project_dir):
        changed = ["app.py"] if self.dirty else []
        return GitStatus(modified=changed, files=[f" M {p}" for p in changed])

    def get_head_sha(self, project_dir):
        return self.head

    def get_last_commit_message(self, project_dir):
        return self.commit_message

    def send_story_webhook(self, report):
        self.reports.append(report)
        return True


@pytest.fixture
def env(monkeypatch):
    fake = FakeEnvironment()
    monkeypatch.setattr("storyloop.workflow.run_agent", fake.run_agent)
    monkeypatch.setattr("storyloop.workflow.has_uncommitted_changes", fake.has_uncommitted_changes)
    monkeypatch.setattr("storyloop.workflow.get_git_status", fake.get_git_status)
    monkeypatch.setattr("storyloop.workflow.get_head_sha", fake.get_head_sha)
    monkeypatch.setattr("storyloop.workflow.get_last_commit_message", fake.get_last_commit_message)
    monkeypatch.setattr("storyloop.workflow.send_story_webhook", fake.send_story_webhook)
    return fake


def _settings(tmp_path, create_drafts: bool = True) -> WorkflowSettings:
    return WorkflowSettings(project_dir=str(tmp_path), agent_options=AgentOptions(), create_drafts=create_drafts)


# ============================================
# Rule 1: approve drafts
# ============================================


def test_draft_is_approved_without_calling_agent(tmp_path, env):
    draft = _write(tmp_path, "1.2.story.md", _story("Draft"))
    approved = _write(tmp_path, "1.1.story.md", _story("Approved"))

    assert run_story_tick(_settings(tmp_path), StoryCommandLog()) is True

    assert _status_of(draft) == "Approved"
    assert _status_of(approved) == "Approved"
    assert env.instructions == []


def test_newest_draft_is_approved_first(tmp_path, env):
    older = _write(tmp_path, "1.1.story.md", _story("Draft"), mtime=1000)
    newer = _write(tmp_path, "1.2.story.md", _story("Draft"), mtime=2000)

    run_story_tick(_settings(tmp_path), StoryCommandLog())

    assert _status_of(newer) == "Approved"
    assert _status_of(older) == "Draft"


# ============================================
# Rule 2: develop approved stories
# ============================================


def test_next_task_is_dispatched_to_agent(tmp_path, env):
    tasks = "- [x] Done one\n- [ ] Parent\n  - [ ] Child\n"
    path = _write(tmp_path, "2.1.story.md", _story("Approved", tasks))
    command_log = StoryCommandLog()

    assert run_story_tick(_settings(tmp_path), command_log) is True

    assert len(env.instructions) == 1
    assert "task 2.1" in env.instructions[0]
    assert "2.1.story.md" in env.instructions[0]
    assert [c.command for c in command_log.commands] == ["dev"]
    assert command_log.commands[0].duration_ms == 1500
    assert command_log.git_before is not None
    assert _status_of(path) == "Approved"


def test_story_with_all_tasks_done_moves_to_review(tmp_path, env):
    path = _write(tmp_path, "2.1.story.md", _story("Approved", "- [x] One\n- [X] Two\n"))

    assert run_story_tick(_settings(tmp_path), StoryCommandLog()) is True

    assert _status_of(path) == "Ready for Review"
    assert env.instructions == []


def test_story_without_tasks_moves_to_review(tmp_path, env):
    path = _write(tmp_path, "2.1.story.md", "## Status\n\nApproved\n")
    run_story_tick(_settings(tmp_path), StoryCommandLog())
    assert _status_of(path) == "Ready for Review"


def test_git_snapshot_failure_does_not_stop_dispatch(tmp_path, env, monkeypatch):
    def _broken(project_dir):
        raise GitError("not a git repository")

    monkeypatch.setattr("storyloop.workflow.get_git_status", _broken)
    _write(tmp_path, "2.1.story.md", _story("Approved"))
    command_log = StoryCommandLog()

    run_story_tick(_settings(tmp_path), command_log)

    assert command_log.git_before is None
    assert len(command_log.commands) == 1


# ============================================
# Rule 3: review, done, commit, notify
# ============================================


def test_review_flow_marks_done_commits_and_notifies(tmp_path, env):
    path = _write(tmp_path, "3.1.story.md", _story("Ready for Review", "- [x] All\n"))
    command_log = StoryCommandLog()
    settings = _settings(tmp_path)

    # Earlier dev work on the same story is part of the report.
    command_log.git_before = env.get_git_status(settings.project_dir)
    command_log.commands.append(CommandRecord("dev", 1000, "2026-01-01T10:00:00", 0))

    assert run_story_tick(settings, command_log) is True

    assert env.instructions[0] == "/BMad:agents:qa *review 3.1.story.md"
    assert env.instructions[1] == "/commit"
    assert _status_of(path) == "Done"

    assert len(env.reports) == 1
    report = env.reports[0]
    assert report.story_name == "3.1.story.md"
    assert [c.command for c in report.commands] == ["dev", "qa", "commit"]
    assert report.commands[-1].commit_message == "feat: password reset"
    assert report.commands[1].commit_message is None

    assert command_log.commands == []
    assert command_log.git_before is None


def test_review_keeps_edits_made_by_the_reviewer(tmp_path, env):
    path = _write(tmp_path, "3.1.story.md", _story("Ready for Review", "- [x] All\n"))

    def _reviewer_appends_notes(instruction):
        if "*review" in instruction:
            with open(path, "a", encoding="utf-8") as f:
                f.write("\n## QA Results\n\nPASS\n")

    env.on_agent = _reviewer_appends_notes
    run_story_tick(_settings(tmp_path), StoryCommandLog())

    with open(path, encoding="utf-8") as f:
        content = f.read()
    assert extract_status(content) == "Done"
    assert "## QA Results" in content


def test_commit_without_new_head_has_no_message(tmp_path, env):
    _write(tmp_path, "3.1.story.md", _story("Ready for Review", "- [x] All\n"))

    def _noop_commit(instruction):
        if instruction == "/commit":
            env.head = "aaa"

    env.on_agent = _noop_commit
    run_story_tick(_settings(tmp_path), StoryCommandLog())

    assert env.reports[0].commands[-1].commit_message is None


def test_failed_notification_still_clears_command_log(tmp_path, env, monkeypatch):
    path = _write(tmp_path, "3.1.story.md", _story("Ready for Review", "- [x] All\n"))
    command_log = StoryCommandLog()

    def _exploding_webhook(report):
        raise RuntimeError("notification sink down")

    monkeypatch.setattr("storyloop.workflow.send_story_webhook", _exploding_webhook)

    with pytest.raises(RuntimeError):
        run_story_tick(_settings(tmp_path), command_log)

    assert _status_of(path) == "Done"
    assert command_log.commands == []
    assert command_log.git_before is None


def test_malformed_webhook_url_does_not_break_review(tmp_path, env, monkeypatch):
    """The real webhook sender swallows a bad URL, so the tick completes."""
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.com:notaport/api/webhooks/1")
    monkeypatch.setattr("storyloop.webhook.check_push_status", lambda project_dir: PushStatus(0, 0, True))
    monkeypatch.setattr("storyloop.workflow.send_story_webhook", send_story_webhook)
    _write(tmp_path, "3.1.story.md", _story("Ready for Review", "- [x] All\n"))
    command_log = StoryCommandLog()

    assert run_story_tick(_settings(tmp_path), command_log) is True
    assert command_log.commands == []


# ============================================
# Rules 4 and 5: drafting and committing leftovers
# ============================================


def test_no_stories_clean_tree_requests_draft(tmp_path, env):
    assert run_story_tick(_settings(tmp_path), StoryCommandLog()) is True
    assert env.instructions == ["/BMad:agents:sm *draft"]


def test_no_stories_dirty_tree_commits_then_drafts(tmp_path, env):
    env.dirty = True
    command_log = StoryCommandLog()

    run_story_tick(_settings(tmp_path), command_log)

    assert env.instructions == ["/commit", "/BMad:agents:sm *draft"]
    assert [c.command for c in command_log.commands] == ["commit", "draft"]


def test_done_stories_only_still_request_draft(tmp_path, env):
    _write(tmp_path, "1.1.story.md", _story("Done"))
    run_story_tick(_settings(tmp_path), StoryCommandLog())
    assert env.instructions == ["/BMad:agents:sm *draft"]


def test_without_drafting_dirty_tree_is_committed(tmp_path, env):
    env.dirty = True
    assert run_story_tick(_settings(tmp_path, create_drafts=False), StoryCommandLog()) is True
    assert env.instructions == ["/commit"]


def test_without_drafting_clean_tree_is_no_work(tmp_path, env):
    _write(tmp_path, "1.1.story.md", _story("Done"))
    assert run_story_tick(_settings(tmp_path, create_drafts=False), StoryCommandLog()) is False
    assert env.instructions == []


def test_story_without_marker_is_left_alone(tmp_path, env):
    path = _write(tmp_path, "notes.md", "# Notes\n\n- [ ] Something\n")
    run_story_tick(_settings(tmp_path, create_drafts=False), StoryCommandLog())
    with open(path, encoding="utf-8") as f:
        assert f.read() == "# Notes\n\n- [ ] Something\n"


# ============================================
# Continuous loop
# ============================================


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps: list[float] = []
    monkeypatch.setattr("storyloop.workflow.time.sleep", sleeps.append)
    return sleeps


def _scripted_tick(outcomes):
    remaining = list(outcomes)
    calls = []

    def _tick(settings, command_log):
        if not remaining:
            pytest.fail("loop ran more ticks than expected")
        calls.append(command_log)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return _tick, calls


def test_loop_stops_after_three_idle_ticks_in_a_row(tmp_path, no_sleep):
    tick, calls = _scripted_tick([True, False, True, False, False, False])

    completed = run_continuous_workflow(_settings(tmp_path), tick=tick)

    assert completed == 2
    assert len(calls) == 6
    # One pause per idle tick except the last.
    assert no_sleep == [30, 30, 30]


def test_loop_shares_one_command_log_across_ticks(tmp_path, no_sleep):
    tick, calls = _scripted_tick([True, False, False, False])
    run_continuous_workflow(_settings(tmp_path), tick=tick)
    assert all(log is calls[0] for log in calls)


def test_error_tick_pauses_and_does_not_count_as_idle(tmp_path, no_sleep):
    tick, calls = _scripted_tick([False, False, RuntimeError("boom"), False])

    completed = run_continuous_workflow(_settings(tmp_path), tick=tick)

    assert completed == 0
    assert len(calls) == 4
    assert no_sleep == [30, 30, 10]


def test_idle_limit_is_configurable(tmp_path, no_sleep, monkeypatch):
    monkeypatch.setattr("storyloop.workflow.MAX_IDLE_TICKS", 1)
    tick, calls = _scripted_tick([False])
    assert run_continuous_workflow(_settings(tmp_path), tick=tick) == 0
    assert no_sleep == []


def test_loop_drains_real_stories(tmp_path, env, no_sleep):
    """Draft -> Approved -> develop -> review -> Done, then idle out."""
    path = _write(tmp_path, "4.1.story.md", _story("Draft", "- [ ] Only task\n"))

    def _developer_checks_task(instruction):
        if "task 1" in instruction:
            with open(path, encoding="utf-8") as f:
                content = f.read()
            with open(path, "w", encoding="utf-8") as f:
                f.write(content.replace("- [ ] Only task", "- [x] Only task"))

    env.on_agent = _developer_checks_task

    completed = run_continuous_workflow(_settings(tmp_path, create_drafts=False))

    assert _status_of(path) == "Done"
    # approve, develop, to-review, review
    assert completed == 4
    assert len(env.reports) == 1
    assert [c.command for c in env.reports[0].commands] == ["dev", "qa", "commit"]
