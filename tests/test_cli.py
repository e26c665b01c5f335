"""Tests for CLI argument parsing, terminal rendering and one-shot commands."""

from __future__ import annotations

import io
import json
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from fieldnote.agent.approval import ApprovalDecision
from fieldnote.agent.events import (
    ContextCleared,
    Done,
    Thinking,
    TokenUsage,
    ToolApproval,
    ToolDenied,
    ToolEnd,
    ToolFailed,
    ToolStart,
)
from fieldnote.cli import TerminalRenderer, main, parse_args
from fieldnote.config.settings import (
    AgentSettings,
    OpenAISettings,
    SessionSettings,
    Settings,
)
from fieldnote.session.manager import SessionManager


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        openai=OpenAISettings(api_key="", model="gpt-4o-mini"),
        agent=AgentSettings(trace_dir=tmp_path / "traces"),
        session=SessionSettings(base_dir=tmp_path),
    )


def _run_main(argv, settings):
    with (
        patch("fieldnote.cli.setup_logging"),
        patch("fieldnote.cli.get_settings", return_value=settings),
    ):
        return main(argv)


def _last_json_line(out: str) -> dict:
    return json.loads(out.strip().splitlines()[-1])


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.query == []
        assert args.json is False
        assert args.model is None
        assert args.session is None
        assert args.log_level == "WARNING"

    def test_query_words_and_flags(self):
        args = parse_args(["--json", "--model", "gpt-4o", "what", "is", "AAPL"])
        assert args.json is True
        assert args.model == "gpt-4o"
        assert args.query == ["what", "is", "AAPL"]

    def test_session_commands(self):
        assert parse_args(["--session", "abcd1234"]).session == "abcd1234"
        assert parse_args(["--list-sessions"]).list_sessions is True
        assert parse_args(["--delete-session", "abcd1234"]).delete_session == "abcd1234"

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestTerminalRenderer:
    def _render(self, *events) -> str:
        out = io.StringIO()
        renderer = TerminalRenderer(out)
        for event in events:
            renderer(event)
        return out.getvalue()

    def test_tool_lifecycle(self):
        text = self._render(
            Thinking(message="Checking files"),
            ToolStart(tool="read_file", args={"path": "a.txt"}),
            ToolEnd(tool="read_file", args={}, result="x", duration_ms=12),
            ToolFailed(tool="current_time", error="Unknown timezone: X"),
            ContextCleared(cleared_count=3, kept_count=5),
        )
        assert "· Checking files" in text
        assert '→ read_file {"path": "a.txt"}' in text
        assert "✓ read_file (12 ms)" in text
        assert "✗ current_time: Unknown timezone: X" in text
        assert "3 old results dropped, 5 kept" in text

    def test_approval_and_denial(self):
        text = self._render(
            ToolApproval(tool="write_file", args={}, approved=ApprovalDecision.deny),
            ToolDenied(tool="write_file", args={}),
        )
        assert "write_file: deny" in text
        assert "write_file denied" in text

    def test_done_prints_answer_and_stats(self):
        done = Done(
            answer="The answer.",
            iterations=2,
            total_time_ms=1500,
            token_usage=TokenUsage(10, 5, 15),
            tokens_per_second=3.33,
        )
        text = self._render(done)
        assert "The answer." in text
        assert "2 iterations" in text
        assert "1.5s" in text
        assert "15 tokens" in text
        assert "3.33 tok/s" in text

    def test_streamed_answer_not_repeated(self):
        out = io.StringIO()
        renderer = TerminalRenderer(out)
        renderer.delta("thinking", "ignored ")
        renderer.delta("answer", "Streamed")
        renderer(Done(answer="Streamed"))
        text = out.getvalue()
        assert text.count("Streamed") == 1
        assert "ignored" not in text


class TestJsonMode:
    def test_no_query(self, settings, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO(""))
        code = _run_main(["--json"], settings)
        assert code == 1
        data = _last_json_line(capsys.readouterr().out)
        assert data["status"] == "error"
        assert data["error"]["code"] == "NO_QUERY"

    def test_missing_api_key_is_config_error(self, settings, capsys):
        code = _run_main(["--json", "what", "is", "AAPL"], settings)
        assert code == 1
        data = _last_json_line(capsys.readouterr().out)
        assert data["query"] == "what is AAPL"
        assert data["error"]["code"] == "CONFIG_ERROR"

    def test_invalid_settings(self, capsys):
        with pytest.raises(ValidationError) as exc_info:
            AgentSettings(max_iterations=0)
        with (
            patch("fieldnote.cli.setup_logging"),
            patch("fieldnote.cli.get_settings", side_effect=exc_info.value),
        ):
            code = main(["--json", "hello"])
        assert code == 1
        data = _last_json_line(capsys.readouterr().out)
        assert data["error"]["code"] == "CONFIG_ERROR"


class TestSessionCommands:
    def test_list_empty(self, settings, capsys):
        assert _run_main(["--list-sessions"], settings) == 0
        assert "No saved sessions." in capsys.readouterr().out

    def test_list_shows_sessions(self, settings, capsys, tmp_path):
        manager = SessionManager(tmp_path)
        meta = manager.start_new("gpt-4o-mini", "openai")
        manager.save_exchange(query="price of AAPL", answer="a", model="m", status="complete")

        assert _run_main(["--list-sessions"], settings) == 0
        out = capsys.readouterr().out
        assert meta.id in out
        assert "price of AAPL" in out

    def test_delete(self, settings, capsys, tmp_path):
        meta = SessionManager(tmp_path).start_new("m", "p")
        assert _run_main(["--delete-session", meta.id], settings) == 0
        assert _run_main(["--delete-session", meta.id], settings) == 1
        assert "not found" in capsys.readouterr().err

    def test_interactive_without_key_fails_fast(self, settings, capsys):
        assert _run_main(["hello"], settings) == 1
        assert "MISSING_API_KEY" in capsys.readouterr().err
