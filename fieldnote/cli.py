"""Command-line entry point.

Modes:
  fieldnote "query..."          interactive session, first query pre-filled
  fieldnote                     interactive session
  fieldnote --json "query..."   one query, one JSON object on stdout
  fieldnote --telegram          run the Telegram channel
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from datetime import datetime

import structlog
from pydantic import ValidationError

from fieldnote.agent.agent import AgentLoop
from fieldnote.agent.approval import ApprovalDecision, ApprovalRequest, auto_approve
from fieldnote.agent.events import (
    AgentEvent,
    ContextCleared,
    Done,
    Thinking,
    ToolApproval,
    ToolDenied,
    ToolEnd,
    ToolFailed,
    ToolLimit,
    ToolProgress,
    ToolStart,
)
from fieldnote.app import build_model_client, build_registry, build_session_manager
from fieldnote.config.settings import Settings, get_settings
from fieldnote.infra.errors import FieldnoteError
from fieldnote.infra.logging import setup_logging
from fieldnote.output.json_mode import (
    ErrorCode,
    build_error_response,
    execute_json_query,
    resolve_query,
)
from fieldnote.runner import AgentRunner

logger = structlog.get_logger()

EXIT_COMMANDS = {"exit", "quit", ":q"}

_APPROVAL_KEYS = {
    "o": ApprovalDecision.allow_once,
    "s": ApprovalDecision.allow_session,
    "d": ApprovalDecision.deny,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fieldnote", description="Tool-using research agent"
    )
    parser.add_argument("query", nargs="*", help="Query to answer (joined with spaces)")
    parser.add_argument(
        "--json", action="store_true",
        help="Answer one query and print a single JSON object to stdout",
    )
    parser.add_argument("--model", default=None, help="Model name (overrides OPENAI_MODEL)")
    parser.add_argument(
        "--session", metavar="ID", default=None, help="Resume a saved session",
    )
    parser.add_argument(
        "--list-sessions", action="store_true", help="List saved sessions and exit",
    )
    parser.add_argument(
        "--delete-session", metavar="ID", default=None, help="Delete a saved session and exit",
    )
    parser.add_argument(
        "--telegram", action="store_true", help="Run the Telegram channel (long polling)",
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Minimum log level written to stderr (default: WARNING)",
    )
    return parser.parse_args(argv)


# ── Rendering ───────────────────────────────────────────────────────────


def _format_args(args: dict) -> str:
    rendered = json.dumps(args, ensure_ascii=False, default=str)
    return rendered if len(rendered) <= 120 else rendered[:117] + "..."


class TerminalRenderer:
    """Prints events as plain terminal lines.

    With streaming on, answer deltas are printed as they arrive and the final
    answer is not printed again.
    """

    def __init__(self, out=None) -> None:
        self._out = out or sys.stdout
        self._answer_streamed = False

    def _line(self, text: str = "") -> None:
        print(text, file=self._out, flush=True)

    def delta(self, kind: str, text: str) -> None:
        if kind != "answer":
            return
        self._answer_streamed = True
        print(text, end="", file=self._out, flush=True)

    def __call__(self, event: AgentEvent) -> None:
        match event:
            case Thinking(message=message):
                self._line(f"· {message}")
            case ToolStart(tool=tool, args=args):
                self._line(f"→ {tool} {_format_args(args)}")
            case ToolProgress(message=message):
                self._line(f"  … {message}")
            case ToolEnd(tool=tool, duration_ms=duration_ms):
                self._line(f"✓ {tool} ({duration_ms} ms)")
            case ToolFailed(tool=tool, error=error):
                self._line(f"✗ {tool}: {error}")
            case ToolApproval(tool=tool, approved=approved):
                self._line(f"  {tool}: {approved.value}")
            case ToolDenied(tool=tool):
                self._line(f"✗ {tool} denied, stopping.")
            case ToolLimit(warning=warning):
                self._line(f"! {warning}")
            case ContextCleared(cleared_count=cleared, kept_count=kept):
                self._line(f"  context trimmed: {cleared} old results dropped, {kept} kept")
            case Done():
                self._render_done(event)

    def _render_done(self, done: Done) -> None:
        if self._answer_streamed:
            self._line()
        elif done.answer:
            self._line()
            self._line(done.answer)
        self._answer_streamed = False
        stats = [f"{done.iterations} iterations", f"{done.total_time_ms / 1000:.1f}s"]
        if done.token_usage is not None:
            stats.append(f"{done.token_usage.total_tokens} tokens")
        if done.tokens_per_second is not None:
            stats.append(f"{done.tokens_per_second} tok/s")
        self._line(f"\n[{' · '.join(stats)}]")


# ── Interactive mode ────────────────────────────────────────────────────


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


def _install_sigint(runner: AgentRunner) -> bool:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, runner.cancel)
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _remove_sigint() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError):
        pass


async def _interactive(args: argparse.Namespace, settings: Settings) -> int:
    renderer = TerminalRenderer()
    session_manager = build_session_manager(settings)
    runner: AgentRunner | None = None

    async def ask_approval(request: ApprovalRequest) -> None:
        print(f"\n? {request.tool} wants to run with {_format_args(request.args)}", flush=True)
        while True:
            answer = await _read_line("  allow [o]nce / [s]ession / [d]eny: ")
            if answer is None:
                decision = ApprovalDecision.deny
                break
            decision = _APPROVAL_KEYS.get(answer.strip().lower()[:1])
            if decision is not None:
                break
        if runner is not None:
            runner.respond_to_approval(decision)

    def on_pending(request: ApprovalRequest) -> None:
        asyncio.get_running_loop().create_task(ask_approval(request))

    runner = AgentRunner(
        build_model_client(settings),
        build_registry(settings),
        settings,
        session_manager=session_manager,
        on_approval_pending=on_pending,
        delta_sink=renderer.delta if settings.agent.streaming else None,
    )

    if session_manager is not None:
        if args.session:
            metadata = runner.resume_session(args.session)
            print(
                f"Resumed session {metadata.id} ({metadata.exchange_count} exchanges).",
                flush=True,
            )
        else:
            metadata = session_manager.start_new(settings.openai.model, settings.openai.provider)
            print(f"Session {metadata.id}", flush=True)

    pending_query = " ".join(args.query).strip()
    while True:
        query = pending_query or await _read_line("\n> ")
        pending_query = ""
        if query is None or query.strip().lower() in EXIT_COMMANDS:
            return 0
        query = query.strip()
        if not query:
            continue

        installed = _install_sigint(runner)
        try:
            result = await runner.run_query(query, on_event=renderer)
        except FieldnoteError as e:
            print(f"Error [{e.code}]: {e}", file=sys.stderr, flush=True)
            continue
        finally:
            if installed:
                _remove_sigint()
        if result.status == "interrupted":
            print("\n(interrupted)", flush=True)


# ── JSON mode ───────────────────────────────────────────────────────────


async def _run_json(args: argparse.Namespace, settings: Settings) -> int:
    query = resolve_query(args.query)

    def agent_factory() -> AgentLoop:
        return AgentLoop(
            build_model_client(settings),
            build_registry(settings),
            model=settings.openai.model,
            agent_settings=settings.agent,
            request_approval=auto_approve,
        )

    response, exit_code = await execute_json_query(
        query,
        agent_factory=agent_factory,
        model=settings.openai.model,
        trace_dir=settings.agent.trace_dir,
    )
    sys.stdout.write(response.to_json() + "\n")
    return exit_code


# ── Session commands ────────────────────────────────────────────────────


def _list_sessions(settings: Settings) -> int:
    manager = build_session_manager(settings)
    sessions = manager.list_sessions() if manager else []
    if not sessions:
        print("No saved sessions.")
        return 0
    for meta in sessions:
        updated = datetime.fromtimestamp(meta.updated_at / 1000).strftime("%Y-%m-%d %H:%M")
        preview = meta.first_query or "(empty)"
        print(f"{meta.id}  {updated}  {meta.exchange_count:>3} exchanges  {preview}")
    return 0


def _delete_session(settings: Settings, session_id: str) -> int:
    manager = build_session_manager(settings)
    if manager is None or not manager.delete_session(session_id):
        print(f'Session "{session_id}" not found.', file=sys.stderr)
        return 1
    print(f"Deleted session {session_id}.")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(json_output=args.json, log_level=args.log_level)

    try:
        settings = get_settings()
    except ValidationError as e:
        if args.json:
            response = build_error_response(
                " ".join(args.query), ErrorCode.CONFIG_ERROR, str(e), model=args.model or ""
            )
            sys.stdout.write(response.to_json() + "\n")
        else:
            print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 1
    if args.model:
        settings.openai.model = args.model

    if args.list_sessions:
        return _list_sessions(settings)
    if args.delete_session:
        return _delete_session(settings, args.delete_session)
    if args.json:
        return asyncio.run(_run_json(args, settings))

    try:
        if args.telegram:
            from fieldnote.channels.telegram import run_telegram

            return asyncio.run(run_telegram(settings))
        return asyncio.run(_interactive(args, settings))
    except FieldnoteError as e:
        print(f"Error [{e.code}]: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
