"""Scratchpad: the run's append-only evidence log plus its durable JSONL trace.

The retained entry list feeds the iteration prompts. Its only mutation
besides appends is eviction of the oldest tool_result entries (init and
thinking entries are never removed). The full history is kept alongside it
for the final answer, which always sees every piece of evidence. Every
entry is written to the trace file as it is created; eviction does not
rewrite the trace, so the file replays exactly what the run did.
"""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import structlog

from fieldnote.agent.events import ToolCallRecord

logger = structlog.get_logger()

EntryType = Literal["init", "thinking", "tool_result"]

DEFAULT_TOOL_CALL_LIMIT = 3
DEFAULT_SIMILARITY_THRESHOLD = 0.7

_WORD_RE = re.compile(r"\w+")


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _parse_result(result: Any) -> Any:
    """Store structured payloads structured, everything else as raw text."""
    if isinstance(result, (dict, list)):
        return result
    if not isinstance(result, str):
        return str(result)
    stripped = result.lstrip()
    if stripped.startswith(("{", "[")):
        try:
            return json.loads(result)
        except json.JSONDecodeError:
            return result
    return result


def result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def _format_args(args: dict[str, Any]) -> str:
    parts = []
    for key, value in args.items():
        rendered = value if isinstance(value, str) else json.dumps(
            value, ensure_ascii=False, default=str
        )
        parts.append(f"{key}={rendered}")
    return ", ".join(parts)


def _jaccard(a: str, b: str) -> float:
    words_a = set(_WORD_RE.findall(a.lower()))
    words_b = set(_WORD_RE.findall(b.lower()))
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


@dataclass(frozen=True)
class ScratchpadEntry:
    type: EntryType
    timestamp: str
    content: str | None = None
    tool_name: str | None = None
    args: dict[str, Any] | None = None
    result: Any = None

    def to_record(self) -> dict[str, Any]:
        """Trace-file representation (one JSON object per line)."""
        if self.type == "tool_result":
            return {
                "type": self.type,
                "timestamp": self.timestamp,
                "toolName": self.tool_name,
                "args": self.args,
                "result": self.result,
            }
        return {"type": self.type, "timestamp": self.timestamp, "content": self.content}

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> ScratchpadEntry:
        if data["type"] == "tool_result":
            return cls(
                type="tool_result",
                timestamp=data["timestamp"],
                tool_name=data["toolName"],
                args=data.get("args") or {},
                result=data.get("result"),
            )
        return cls(type=data["type"], timestamp=data["timestamp"], content=data.get("content"))


def trace_filename(query: str, now: datetime | None = None) -> str:
    """Unique per run: timestamp + query hash + random suffix."""
    now = now or datetime.now(UTC)
    digest = hashlib.sha256(query.encode("utf-8")).hexdigest()[:12]
    return f"{now:%Y%m%d-%H%M%S}_{digest}_{uuid.uuid4().hex[:8]}.jsonl"


def load_trace(path: Path) -> list[ScratchpadEntry]:
    """Re-parse a trace file line by line."""
    entries: list[ScratchpadEntry] = []
    with path.open(encoding="utf-8") as fh:
        for line in fh:
            if line.strip():
                entries.append(ScratchpadEntry.from_record(json.loads(line)))
    return entries


class Scratchpad:
    """Append-only evidence log for a single run."""

    def __init__(
        self,
        query: str,
        trace_dir: Path,
        *,
        default_tool_call_limit: int = DEFAULT_TOOL_CALL_LIMIT,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        self._entries: list[ScratchpadEntry] = []
        self._history: list[ScratchpadEntry] = []
        self._records: list[ToolCallRecord] = []
        self._usage: dict[str, int] = {}
        self._limits: dict[str, int] = {}
        self._queries: dict[str, list[str]] = {}
        self._default_limit = default_tool_call_limit
        self._similarity_threshold = similarity_threshold

        trace_dir.mkdir(parents=True, exist_ok=True)
        self._trace_path = trace_dir / trace_filename(query)
        self._append(ScratchpadEntry(type="init", timestamp=_now(), content=query))

    @property
    def trace_path(self) -> Path:
        return self._trace_path

    @property
    def entries(self) -> tuple[ScratchpadEntry, ...]:
        """Entries still in the prompt context."""
        return tuple(self._entries)

    @property
    def history(self) -> tuple[ScratchpadEntry, ...]:
        """Every entry of the run, including evicted tool results."""
        return tuple(self._history)

    def _append(self, entry: ScratchpadEntry) -> None:
        self._entries.append(entry)
        self._history.append(entry)
        with self._trace_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry.to_record(), ensure_ascii=False, default=str))
            fh.write("\n")

    def add_thinking(self, text: str) -> None:
        self._append(ScratchpadEntry(type="thinking", timestamp=_now(), content=text))

    def add_tool_result(self, tool_name: str, args: dict[str, Any], result: Any) -> None:
        stored = _parse_result(result)
        self._append(
            ScratchpadEntry(
                type="tool_result",
                timestamp=_now(),
                tool_name=tool_name,
                args=dict(args),
                result=stored,
            )
        )
        self._records.append(
            ToolCallRecord(tool=tool_name, args=dict(args), result=result_text(stored))
        )

    def has_tool_results(self) -> bool:
        return any(e.type == "tool_result" for e in self._entries)

    def get_tool_results(self) -> str:
        blocks = [
            f"### {e.tool_name}({_format_args(e.args or {})})\n{result_text(e.result)}"
            for e in self._entries
            if e.type == "tool_result"
        ]
        return "\n\n".join(blocks)

    def get_tool_call_records(self) -> list[ToolCallRecord]:
        return list(self._records)

    # ── Tool usage tracking ──────────────────────────────────────────────

    def record_tool_call(
        self, tool_name: str, query: str | None = None, *, limit: int | None = None
    ) -> None:
        self._usage[tool_name] = self._usage.get(tool_name, 0) + 1
        if limit is not None:
            self._limits[tool_name] = limit
        if query:
            self._queries.setdefault(tool_name, []).append(query)

    def can_call_tool(
        self, tool_name: str, query: str | None = None, *, limit: int | None = None
    ) -> str | None:
        """Return a non-blocking warning, or None when the call looks fine."""
        limit = limit or self._limits.get(tool_name, self._default_limit)
        count = self._usage.get(tool_name, 0)
        warnings: list[str] = []

        if count >= limit:
            warnings.append(
                f"Tool '{tool_name}' has already been called {count} times "
                f"(suggested limit: {limit}). Consider answering with the data "
                "already gathered."
            )
        elif count + 1 == limit:
            warnings.append(
                f"Tool '{tool_name}' is approaching its suggested limit "
                f"({count + 1}/{limit})."
            )

        if query:
            for previous in self._queries.get(tool_name, []):
                if _jaccard(query, previous) >= self._similarity_threshold:
                    warnings.append(
                        f"A very similar query was already sent to '{tool_name}': "
                        f"\"{previous}\"."
                    )
                    break

        return " ".join(warnings) if warnings else None

    def format_tool_usage_for_prompt(self) -> str:
        if not self._usage:
            return ""
        lines = ["## Tool Usage This Query"]
        for name, count in self._usage.items():
            limit = self._limits.get(name, self._default_limit)
            noun = "call" if count == 1 else "calls"
            lines.append(f"- {name}: {count} {noun} (suggested limit {limit})")
        return "\n".join(lines)

    # ── Eviction ─────────────────────────────────────────────────────────

    def clear_oldest_tool_results(self, keep: int) -> int:
        """Evict oldest tool results so at most *keep* remain. Returns count evicted."""
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")
        positions = [i for i, e in enumerate(self._entries) if e.type == "tool_result"]
        excess = len(positions) - keep
        if excess <= 0:
            return 0
        evicted = set(positions[:excess])
        self._entries = [e for i, e in enumerate(self._entries) if i not in evicted]
        logger.info("scratchpad_evicted", evicted=excess, kept=keep)
        return excess

    def tool_result_count(self) -> int:
        return sum(1 for e in self._entries if e.type == "tool_result")
