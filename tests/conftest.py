"""Shared fixtures: keep logs and environment out of the developer's setup."""

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path_factory, monkeypatch):
    monkeypatch.setenv("STORYLOOP_LOGS_DIR", str(tmp_path_factory.mktemp("logs")))
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("STORYLOOP_MODEL", raising=False)
    monkeypatch.delenv("STORYLOOP_CLAUDE_PATH", raising=False)
