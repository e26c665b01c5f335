from __future__ import annotations

import shutil
from pathlib import Path

import structlog

from fieldnote.agent.events import TokenUsage
from fieldnote.infra.errors import SessionError
from fieldnote.session.history import ChatHistory, SessionHistory
from fieldnote.session.id import generate_session_id
from fieldnote.session.models import (
    ExchangeStatus,
    SessionExchange,
    SessionMetadata,
    TokenUsageRecord,
    now_ms,
)
from fieldnote.session.store import SessionStore, sessions_root

logger = structlog.get_logger()

QUERY_PREVIEW_LENGTH = 100


def _truncate(text: str, max_len: int = QUERY_PREVIEW_LENGTH) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


class SessionManager:
    """Current-session bookkeeping on top of SessionStore and SessionHistory.

    A manager tracks at most one current session. save_exchange is a no-op
    until start_new() or resume() has been called.
    """

    def __init__(self, base_dir: Path = Path(".")) -> None:
        self._base_dir = base_dir
        self._store = SessionStore(base_dir)
        self._history: SessionHistory | None = None
        self._session_id: str | None = None

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def store(self) -> SessionStore:
        return self._store

    def start_new(self, model: str, provider: str) -> SessionMetadata:
        session_id = generate_session_id()
        while self._store.get(session_id) is not None:
            session_id = generate_session_id()
        metadata = SessionMetadata(id=session_id, model=model, provider=provider)
        self._store.create(metadata)
        self._history = SessionHistory(session_id, self._base_dir)
        self._session_id = session_id
        logger.info("session_started", session_id=session_id, model=model)
        return metadata

    def resume(
        self, session_id: str, chat_history: ChatHistory
    ) -> tuple[SessionMetadata, list[SessionExchange]]:
        """Make *session_id* current and replay its completed exchanges."""
        metadata = self._store.get(session_id)
        if metadata is None:
            raise SessionError(f'Session "{session_id}" not found.', code="SESSION_NOT_FOUND")

        self._history = SessionHistory(session_id, self._base_dir)
        self._session_id = session_id
        exchanges = self._history.load()
        replayed = 0
        for exchange in exchanges:
            if exchange.status == "complete":
                chat_history.restore(exchange.query, exchange.answer, exchange.summary)
                replayed += 1
        logger.info(
            "session_resumed",
            session_id=session_id,
            exchanges=len(exchanges),
            replayed=replayed,
        )
        return metadata, exchanges

    def save_exchange(
        self,
        *,
        query: str,
        answer: str,
        model: str,
        status: ExchangeStatus,
        summary: str | None = None,
        duration: int | None = None,
        token_usage: TokenUsage | None = None,
    ) -> SessionExchange | None:
        if self._history is None or self._session_id is None:
            return None

        timestamp = now_ms()
        exchange = SessionExchange(
            id=str(timestamp),
            timestamp=timestamp,
            query=query,
            answer=answer,
            summary=summary,
            model=model,
            status=status,
            duration=duration,
            token_usage=TokenUsageRecord.from_usage(token_usage),
        )
        self._history.append(exchange)

        meta = self._store.get(self._session_id)
        if meta is not None:
            changes: dict = {"updated_at": timestamp, "last_query": _truncate(query)}
            if status == "complete":
                changes["exchange_count"] = meta.exchange_count + 1
            if not meta.first_query:
                changes["first_query"] = _truncate(query)
            self._store.update(self._session_id, **changes)
        logger.info("session_exchange_saved", session_id=self._session_id, status=status)
        return exchange

    def list_sessions(self) -> list[SessionMetadata]:
        return self._store.list()

    def delete_session(self, session_id: str) -> bool:
        deleted = self._store.delete(session_id)
        if deleted:
            shutil.rmtree(sessions_root(self._base_dir) / session_id, ignore_errors=True)
            if self._session_id == session_id:
                self._session_id = None
                self._history = None
            logger.info("session_deleted", session_id=session_id)
        return deleted

    # ── Session-scoped tool approvals ────────────────────────────────────

    def load_approved_tools(self) -> set[str]:
        if self._session_id is None:
            return set()
        meta = self._store.get(self._session_id)
        return set(meta.approved_tools) if meta else set()

    def save_approved_tools(self, tools: set[str]) -> None:
        if self._session_id is None:
            return
        self._store.update(self._session_id, approved_tools=sorted(tools))
