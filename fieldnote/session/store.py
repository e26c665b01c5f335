from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from fieldnote.session.models import SessionIndex, SessionMetadata

logger = structlog.get_logger()

SESSIONS_DIR = Path(".fieldnote") / "sessions"
INDEX_FILE = "index.json"


def sessions_root(base_dir: Path) -> Path:
    return base_dir / SESSIONS_DIR


class SessionStore:
    """index.json: session id → metadata. Every operation re-reads the file."""

    def __init__(self, base_dir: Path) -> None:
        self._index_path = sessions_root(base_dir) / INDEX_FILE

    @property
    def index_path(self) -> Path:
        return self._index_path

    def load(self) -> SessionIndex:
        """Missing or corrupt index → empty index."""
        if not self._index_path.exists():
            return SessionIndex()
        try:
            data = json.loads(self._index_path.read_text(encoding="utf-8"))
            return SessionIndex.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("session_index_unreadable", path=str(self._index_path), error=str(e))
            return SessionIndex()

    def save(self, index: SessionIndex) -> None:
        self._index_path.parent.mkdir(parents=True, exist_ok=True)
        self._index_path.write_text(
            json.dumps(index.to_json_dict(), indent=2, ensure_ascii=False), encoding="utf-8"
        )

    def create(self, metadata: SessionMetadata) -> None:
        index = self.load()
        index.sessions[metadata.id] = metadata
        self.save(index)

    def get(self, session_id: str) -> SessionMetadata | None:
        return self.load().sessions.get(session_id)

    def list(self) -> list[SessionMetadata]:
        """Newest (by updated_at) first."""
        return sorted(self.load().sessions.values(), key=lambda m: m.updated_at, reverse=True)

    def update(self, session_id: str, **changes: Any) -> SessionMetadata | None:
        """Merge changes into existing metadata. Returns None for unknown ids."""
        index = self.load()
        existing = index.sessions.get(session_id)
        if existing is None:
            return None
        updated = existing.model_copy(update=changes)
        index.sessions[session_id] = updated
        self.save(index)
        return updated

    def delete(self, session_id: str) -> bool:
        index = self.load()
        if session_id not in index.sessions:
            return False
        del index.sessions[session_id]
        self.save(index)
        return True
