"""Tests for the Claude CLI executor with a stubbed engine."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from backlog_agent.core.config import ExecutorConfig, WorkflowConfig
from backlog_agent.core.models import Session
from backlog_agent.executors import terminal
from backlog_agent.executors.base import ExecutionContext
from backlog_agent.executors.terminal import ClaudeTerminalExecutor
from backlog_agent.executors.terminal_engine import EngineRun, GitBaseline
from backlog_agent.sessions.store import InMemorySessionStore


@pytest.fixture
def no_git(monkeypatch):
    monkeypatch.setattr(terminal, "capture_baseline", lambda cwd: GitBaseline())
    monkeypatch.setattr(terminal, "collect_changes", lambda cwd, baseline: (["src/app.ts"], "diff --git a/src/app.ts"))


def _executor(engine=None, store=None, **config):
    return ClaudeTerminalExecutor(
        ExecutorConfig(claude_cli_executable="claude-test", max_turns=7, **config),
        WorkflowConfig(),
        store or InMemorySessionStore(),
        engine=engine or MagicMock(),
    )


class TestBuildCommand:
    def test_fresh_session(self):
        cmd = _executor(claude_cli_model="opus").build_command()
        assert cmd[0] == "claude-test"
        assert cmd[cmd.index("--model") + 1] == "opus"
        assert cmd[cmd.index("--max-turns") + 1] == "7"
        assert "--resume" not in cmd

    def test_resume_token_appended(self):
        cmd = _executor().build_command(resume_token="sess-42")
        assert cmd[-2:] == ["--resume", "sess-42"]

    def test_model_override_wins(self):
        cmd = _executor(model="haiku").build_command()
        assert cmd[cmd.index("--model") + 1] == "haiku"


class TestToResult:
    def test_success(self, no_git):
        run = EngineRun(
            exit_code=0,
            stdout="Opened https://github.com/o/r/pull/9",
            raw_stdout="{}",
            session_id="sess-1",
            attempts=1,
        )
        result = _executor()._to_result(run, Path("."), GitBaseline())

        assert result.success
        assert result.session_token == "sess-1"
        assert result.modified_files == ["src/app.ts"]
        assert result.diff.startswith("diff --git")
        assert result.pr_url == "https://github.com/o/r/pull/9"
        assert result.error is None

    def test_timeout_reports_reason(self, no_git):
        run = EngineRun(exit_code=-15, raw_stdout="x", timed_out=True, timeout_reason="Maximum runtime of 900s exceeded")
        result = _executor()._to_result(run, Path("."), GitBaseline())

        assert not result.success
        assert result.timed_out
        assert result.error == "Maximum runtime of 900s exceeded"

    def test_silent_failure(self, no_git):
        run = EngineRun(exit_code=1, attempts=3)
        result = _executor()._to_result(run, Path("."), GitBaseline())
        assert result.error == "No output received from Claude Code after 3 attempts"
        assert result.attempts == 3

    def test_stderr_used_when_output_has_no_error(self, no_git):
        run = EngineRun(exit_code=2, stdout="working", raw_stdout="working", stderr="auth expired\n")
        result = _executor()._to_result(run, Path("."), GitBaseline())
        assert result.error == "auth expired"


class TestSessions:
    @pytest.mark.asyncio
    async def test_resume_uses_stored_token_and_saves_new_one(self, no_git, tmp_path):
        engine = MagicMock()
        engine.run = AsyncMock(return_value=EngineRun(exit_code=0, stdout="done", raw_stdout="{}", session_id="sess-2"))
        store = InMemorySessionStore({"t1": "sess-1"})
        session = Session(task_id="t1", title="Add greeting", project_path=str(tmp_path))

        result = await _executor(engine, store).resume_session(
            session, "make it blue", ExecutionContext(cwd=tmp_path),
        )

        argv, prompt = engine.run.await_args.args[:2]
        assert argv[-2:] == ["--resume", "sess-1"]
        assert "make it blue" in prompt
        assert store.get_token("t1") == "sess-2"
        assert result.session_token == "sess-2"

    @pytest.mark.asyncio
    async def test_resume_without_token_starts_fresh(self, no_git, tmp_path):
        engine = MagicMock()
        engine.run = AsyncMock(return_value=EngineRun(exit_code=0, stdout="done", raw_stdout="{}"))
        session = Session(task_id="t1", title="Add greeting", project_path=str(tmp_path))

        await _executor(engine).resume_session(session, "make it blue", ExecutionContext(cwd=tmp_path))

        argv, prompt = engine.run.await_args.args[:2]
        assert "--resume" not in argv
        assert prompt.startswith("# Task: Add greeting")

    @pytest.mark.asyncio
    async def test_prompt_truncated_to_configured_size(self, no_git, tmp_path):
        engine = MagicMock()
        engine.run = AsyncMock(return_value=EngineRun(exit_code=0, stdout="done", raw_stdout="{}"))
        session = Session(task_id="t1", title="Add greeting", description="x" * 5000, project_path=str(tmp_path))

        await _executor(engine, prompt_max_chars=1000).start_session(session, context=ExecutionContext(cwd=tmp_path))

        prompt = engine.run.await_args.args[1]
        assert prompt.endswith("[... prompt truncated ...]")
        assert len(prompt) < 1100
