"""Session-level controller around AgentLoop.

AgentRunner outlives individual runs: it owns the session-approved tool set,
the approval gate, the chat history and the current run signal, and creates a
fresh AgentLoop (and RunContext) for every query.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from fieldnote.agent.agent import AgentLoop, DeltaSink
from fieldnote.agent.approval import (
    ApprovalCallback,
    ApprovalDecision,
    ApprovalGate,
    ApprovalRequest,
)
from fieldnote.agent.cancellation import RunSignal
from fieldnote.agent.events import AgentEvent, Done
from fieldnote.infra.errors import AgentError, RunCancelledError
from fieldnote.session.history import ChatHistory
from fieldnote.session.models import ExchangeStatus

if TYPE_CHECKING:
    from fieldnote.agent.model_client import ModelClient
    from fieldnote.config.settings import Settings
    from fieldnote.session.manager import SessionManager
    from fieldnote.session.models import SessionMetadata
    from fieldnote.tools.registry import ToolRegistry

logger = structlog.get_logger()

EventHandler = Callable[[AgentEvent], None]


@dataclass
class RunResult:
    answer: str
    status: ExchangeStatus
    done: Done | None = None


class AgentRunner:
    """Serializes queries for one conversation.

    request_approval overrides the interactive gate (e.g. auto_approve for
    non-interactive modes). Without it, approval requests go through the gate
    and are answered via respond_to_approval().
    """

    def __init__(
        self,
        model_client: ModelClient,
        registry: ToolRegistry,
        settings: Settings,
        *,
        session_manager: SessionManager | None = None,
        request_approval: ApprovalCallback | None = None,
        on_approval_pending: Callable[[ApprovalRequest], None] | None = None,
        delta_sink: DeltaSink | None = None,
        session_id: str = "main",
    ) -> None:
        self._model_client = model_client
        self._registry = registry
        self._settings = settings
        self._session_manager = session_manager
        self._gate = ApprovalGate(on_pending=on_approval_pending)
        self._request_approval = request_approval or self._gate.ask
        self._delta_sink = delta_sink
        self._session_id = session_id
        self._session_approved: set[str] = set()
        self._chat_history = ChatHistory()
        self._signal: RunSignal | None = None
        self._running = False

    @property
    def model(self) -> str:
        return self._settings.openai.model

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_approval(self) -> ApprovalRequest | None:
        return self._gate.pending

    @property
    def session_approved_tools(self) -> frozenset[str]:
        return frozenset(self._session_approved)

    @property
    def chat_history(self) -> ChatHistory:
        return self._chat_history

    def resume_session(self, session_id: str) -> SessionMetadata:
        """Load a stored session's history and approvals into this runner."""
        if self._session_manager is None:
            raise AgentError("Session persistence is disabled", code="NO_SESSION_MANAGER")
        metadata, _ = self._session_manager.resume(session_id, self._chat_history)
        self._session_approved |= self._session_manager.load_approved_tools()
        self._session_id = session_id
        return metadata

    def respond_to_approval(self, decision: ApprovalDecision) -> bool:
        return self._gate.resolve(decision)

    def cancel(self) -> bool:
        """Abort the active run. Any pending approval resolves as deny."""
        if self._signal is None or self._signal.aborted:
            return False
        self._signal.abort()
        return True

    async def run_query(self, query: str, on_event: EventHandler | None = None) -> RunResult:
        """Run *query* to completion, forwarding every event to on_event.

        Cancellation yields status 'interrupted'. Any other failure is saved
        as an 'error' exchange and re-raised.
        """
        if self._running:
            raise AgentError("A query is already running", code="RUN_IN_PROGRESS")
        self._running = True
        signal = RunSignal()
        signal.on_abort(self._gate.cancel)
        self._signal = signal

        log = logger.bind(session_id=self._session_id)
        history = self._chat_history.user_queries()
        done: Done | None = None
        try:
            loop = AgentLoop(
                self._model_client,
                self._registry,
                model=self.model,
                agent_settings=self._settings.agent,
                request_approval=self._request_approval,
                session_approved_tools=self._session_approved,
                signal=signal,
                delta_sink=self._delta_sink,
                session_id=self._session_id,
            )
            self._chat_history.save_user_query(query)
            async for event in loop.run(query, history=history or None):
                if isinstance(event, Done):
                    done = event
                if on_event is not None:
                    on_event(event)
        except RunCancelledError:
            log.info("query_interrupted")
            self._save("interrupted", query, "")
            return RunResult(answer="", status="interrupted")
        except Exception as e:
            log.error("query_failed", error=str(e), error_type=type(e).__name__)
            self._save("error", query, "")
            raise
        finally:
            self._running = False
            self._signal = None

        answer = done.answer if done else ""
        self._chat_history.save_answer(answer)
        self._save("complete", query, answer, done)
        return RunResult(answer=answer, status="complete", done=done)

    def _save(
        self, status: ExchangeStatus, query: str, answer: str, done: Done | None = None
    ) -> None:
        if self._session_manager is None:
            return
        self._session_manager.save_exchange(
            query=query,
            answer=answer,
            model=self.model,
            status=status,
            duration=done.total_time_ms if done else None,
            token_usage=done.token_usage if done else None,
        )
        self._session_manager.save_approved_tools(self._session_approved)
