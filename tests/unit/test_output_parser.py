"""Tests for agent output parsing and live signal detection."""

import json
from unittest.mock import AsyncMock

import pytest

from backlog_agent.executors.base import ExecutorCallbacks
from backlog_agent.executors.output_parser import (
    DetectedSignal,
    SignalKind,
    SignalParser,
    deliver_signal,
    extract_session_id,
    format_signal_comment,
    parse_output,
    parse_stream_line,
)

PLAN = "## Plan\n1. Create the toggle component\n2. Wire it into the header"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def parser(clock):
    return SignalParser(clock=clock)


class TestSessionIds:
    def test_json_event(self):
        assert extract_session_id(json.dumps({"type": "system", "session_id": "abc-123"})) == "abc-123"

    def test_plain_text(self):
        assert extract_session_id("Session ID: 0f3a-99") == "0f3a-99"

    def test_absent(self):
        assert extract_session_id("Thinking...") is None


class TestStreamLines:
    def test_assistant_text_and_tool_use(self):
        line = json.dumps({
            "type": "assistant",
            "session_id": "s1",
            "message": {"content": [
                {"type": "text", "text": "Reading the header"},
                {"type": "tool_use", "name": "Edit"},
            ]},
        })
        parsed = parse_stream_line(line)
        assert parsed.session_id == "s1"
        assert parsed.text == "Reading the header\n[Tool Call: Edit]\n"

    def test_result_event(self):
        parsed = parse_stream_line(json.dumps({"type": "result", "result": "All done"}))
        assert parsed.result_text == "All done"
        assert parsed.text == ""

    def test_non_json_passes_through(self):
        assert parse_stream_line("plain output").text == "plain output\n"

    def test_blank_line(self):
        assert parse_stream_line("   ").text == ""


class TestParseOutput:
    def test_files_error_pr_and_summary(self):
        text = (
            "modified: src/app.ts\n"
            "created: `src/toggle.ts`\n"
            "modified: src/app.ts\n"
            "error: lint warning treated as error\n\n"
            "Opened https://github.com/octo/app/pull/12 for review.\n\n"
            "Added a dark mode toggle to the header and persisted the choice in local storage."
        )
        parsed = parse_output(text)
        assert parsed.files == ["src/app.ts", "src/toggle.ts"]
        assert parsed.error == "error: lint warning treated as error"
        assert parsed.pr_url == "https://github.com/octo/app/pull/12"
        assert parsed.summary.startswith("Added a dark mode toggle")

    def test_empty_output(self):
        parsed = parse_output("")
        assert parsed.files is None
        assert parsed.pr_url is None
        assert parsed.summary is None


class TestSignalParser:
    """Sections are scanned once complete and signals are rate limited per kind."""

    def test_plan_detected_when_section_closes(self, parser):
        assert parser.feed(PLAN) == []
        signals = parser.feed("\n\n")
        assert [s.kind for s in signals] == [SignalKind.PLAN]
        assert signals[0].content == PLAN

    def test_flush_scans_remainder(self, parser):
        parser.feed(PLAN)
        assert [s.kind for s in parser.flush()] == [SignalKind.PLAN]

    def test_duplicate_plan_is_suppressed(self, parser, clock):
        parser.feed(PLAN + "\n\n")
        clock.now += 120
        assert parser.feed(PLAN + "\n\n") == []

    def test_progress_is_rate_limited(self, parser, clock):
        assert [s.kind for s in parser.feed("Creating file src/toggle.tsx\n\n")] == [SignalKind.PROGRESS]
        clock.now += 5
        assert parser.feed("Updating file src/header.tsx\n\n") == []
        clock.now += 20
        assert [s.content for s in parser.feed("Updating file src/footer.tsx\n\n")] == [
            "Updating file src/footer.tsx"
        ]

    def test_question(self, parser):
        signals = parser.feed("Should I use CSS variables for the palette?\n\n")
        assert [s.kind for s in signals] == [SignalKind.QUESTION]

    def test_error_line(self, parser):
        signals = parser.feed("error: cannot find module 'theme'\n\n")
        assert [s.content for s in signals] == ["error: cannot find module 'theme'"]

    def test_pr_announced_once(self, parser, clock):
        text = "Pull Request created: https://github.com/octo/app/pull/7\n\n"
        signals = parser.feed(text)
        assert signals == [DetectedSignal(SignalKind.PR_CREATED, "https://github.com/octo/app/pull/7", text.strip())]
        clock.now += 600
        assert parser.feed(text) == []

    def test_short_sections_ignored(self, parser):
        assert parser.feed("ok\n\n") == []


class TestSignalDelivery:
    def test_format_pr_comment_carries_marker(self):
        signal = DetectedSignal(SignalKind.PR_CREATED, "https://github.com/o/r/pull/1", "")
        assert "Pull Request Created" in format_signal_comment(signal)

    def test_format_question_names_agent(self):
        signal = DetectedSignal(SignalKind.QUESTION, "Which colour?", "")
        assert "Gemini has a question" in format_signal_comment(signal, agent_name="Gemini")

    @pytest.mark.asyncio
    async def test_progress_reaches_both_callbacks(self):
        callbacks = ExecutorCallbacks(on_comment=AsyncMock(), on_progress=AsyncMock())
        signal = DetectedSignal(SignalKind.PROGRESS, "Creating file a.ts", "")

        await deliver_signal(signal, callbacks, "Claude")

        callbacks.on_comment.assert_awaited_once()
        callbacks.on_progress.assert_awaited_once_with("Creating file a.ts")

    @pytest.mark.asyncio
    async def test_callback_failure_is_swallowed(self):
        callbacks = ExecutorCallbacks(on_comment=AsyncMock(side_effect=RuntimeError("tracker down")))
        await deliver_signal(DetectedSignal(SignalKind.PLAN, "plan", ""), callbacks, "Claude")
