"""Shared test fixtures for unit tests."""

import pytest

from backlog_agent.core.config import OrchestratorConfig


@pytest.fixture
def config(tmp_path):
    """Orchestrator config rooted in tmp_path with tracker credentials set."""
    return OrchestratorConfig(
        workspace=tmp_path,
        tracker={
            "api_url": "https://tracker.test",
            "client_id": "client",
            "client_secret": "secret",
        },
        github={"token": "ghp_test"},
        worktree={"enabled": False, "root": tmp_path / "worktrees"},
        worker={
            "repository_path": tmp_path,
            "session_store_path": tmp_path / "terminal-sessions.json",
            "sessions_path": tmp_path / "sessions.json",
        },
        executor={"logs_dir": tmp_path / "logs"},
        webhook={"secret": "whsec"},
    )
