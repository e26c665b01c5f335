"""Pydantic models for file-based session persistence.

On disk the fields are camelCase (index.json, history.jsonl); in Python they
are snake_case. Timestamps are epoch milliseconds.
"""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fieldnote.agent.events import TokenUsage

ExchangeStatus = Literal["complete", "error", "interrupted"]

INDEX_VERSION = 1


def now_ms() -> int:
    return int(time.time() * 1000)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TokenUsageRecord(_CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_usage(cls, usage: TokenUsage | None) -> TokenUsageRecord | None:
        if usage is None:
            return None
        return cls(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
        )


class SessionExchange(_CamelModel):
    """One query/answer pair, appended to history.jsonl."""

    id: str = Field(min_length=1)
    timestamp: int = Field(default_factory=now_ms, gt=0)
    query: str = Field(min_length=1)
    answer: str = ""
    summary: str | None = None
    model: str = ""
    status: ExchangeStatus = "complete"
    duration: int | None = None
    token_usage: TokenUsageRecord | None = None


class SessionMetadata(_CamelModel):
    id: str = Field(pattern=r"^[a-z0-9]{8}$")
    created_at: int = Field(default_factory=now_ms, gt=0)
    updated_at: int = Field(default_factory=now_ms, gt=0)
    exchange_count: int = Field(0, ge=0)
    model: str = ""
    provider: str = ""
    first_query: str = ""
    last_query: str = ""
    approved_tools: list[str] = Field(default_factory=list)


class SessionIndex(_CamelModel):
    version: int = INDEX_VERSION
    sessions: dict[str, SessionMetadata] = Field(default_factory=dict)
