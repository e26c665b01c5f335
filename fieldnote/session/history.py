from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import structlog
from pydantic import ValidationError

from fieldnote.session.models import SessionExchange
from fieldnote.session.store import sessions_root

logger = structlog.get_logger()

HISTORY_FILE = "history.jsonl"


class SessionHistory:
    """Append-only exchange log for one session: <id>/history.jsonl."""

    def __init__(self, session_id: str, base_dir: Path) -> None:
        self._path = sessions_root(base_dir) / session_id / HISTORY_FILE

    @property
    def path(self) -> Path:
        return self._path

    def append(self, exchange: SessionExchange) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(exchange.to_json_dict(), ensure_ascii=False))
            fh.write("\n")

    def load(self) -> list[SessionExchange]:
        """All parseable exchanges in order. Blank and corrupt lines are skipped."""
        if not self._path.exists():
            return []
        exchanges: list[SessionExchange] = []
        with self._path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    exchanges.append(SessionExchange.model_validate_json(line))
                except ValidationError:
                    logger.warning(
                        "session_history_line_skipped", path=str(self._path), line=lineno
                    )
        return exchanges


@dataclass
class ChatMessage:
    query: str
    answer: str | None = None
    summary: str | None = None


class ChatHistory:
    """In-memory prior exchanges of the current conversation."""

    def __init__(self) -> None:
        self._messages: list[ChatMessage] = []

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    def has_messages(self) -> bool:
        return bool(self._messages)

    def save_user_query(self, query: str) -> None:
        self._messages.append(ChatMessage(query=query))

    def save_answer(self, answer: str, summary: str | None = None) -> None:
        """Attach the answer to the most recent query."""
        if not self._messages:
            return
        last = self._messages[-1]
        last.answer = answer
        last.summary = summary

    def restore(self, query: str, answer: str, summary: str | None = None) -> None:
        self._messages.append(ChatMessage(query=query, answer=answer, summary=summary))

    def user_queries(self) -> list[str]:
        return [m.query for m in self._messages]

    def clear(self) -> None:
        self._messages.clear()
