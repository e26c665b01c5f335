from __future__ import annotations

import math
from typing import TYPE_CHECKING, Protocol

import structlog

from fieldnote.agent.events import ContextCleared

if TYPE_CHECKING:
    from fieldnote.agent.scratchpad import Scratchpad
    from fieldnote.config.settings import AgentSettings

logger = structlog.get_logger()

# Rough average for English prose mixed with JSON payloads.
_CHARS_PER_TOKEN = 3.5


class TokenEstimator(Protocol):
    def estimate(self, text: str) -> int: ...


class CharEstimator:
    """Character-count heuristic. Approximate, never exact."""

    def __init__(self, chars_per_token: float = _CHARS_PER_TOKEN) -> None:
        self._chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)


class TiktokenEstimator:
    """tiktoken encoding for the bound model, char heuristic for unknown models."""

    def __init__(self, model: str) -> None:
        import tiktoken

        self._fallback = CharEstimator()
        try:
            self._encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            self._encoding = None
            logger.warning("tokenizer_fallback", model=model, mode="estimate")

    @property
    def mode(self) -> str:
        return "estimate" if self._encoding is None else "exact"

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is None:
            return self._fallback.estimate(text)
        return len(self._encoding.encode(text))


def build_estimator(settings: AgentSettings, model: str) -> TokenEstimator:
    if settings.estimator == "tiktoken":
        return TiktokenEstimator(model)
    return CharEstimator()


class ContextThresholdManager:
    """Bounds iteration-prompt growth by evicting the oldest tool results.

    Thinking entries are never evicted; the most recent keep_count tool
    results always survive.
    """

    def __init__(self, estimator: TokenEstimator, threshold: int, keep_count: int) -> None:
        self._estimator = estimator
        self._threshold = threshold
        self._keep_count = keep_count

    @property
    def threshold(self) -> int:
        return self._threshold

    def estimate(self, system_prompt: str, query: str, scratchpad: Scratchpad) -> int:
        return self._estimator.estimate(
            system_prompt + query + scratchpad.get_tool_results()
        )

    def check(
        self, system_prompt: str, query: str, scratchpad: Scratchpad
    ) -> ContextCleared | None:
        estimated = self.estimate(system_prompt, query, scratchpad)
        if estimated <= self._threshold:
            return None
        cleared = scratchpad.clear_oldest_tool_results(self._keep_count)
        logger.info(
            "context_threshold_exceeded",
            estimated_tokens=estimated,
            threshold=self._threshold,
            cleared=cleared,
        )
        if cleared == 0:
            return None
        return ContextCleared(
            cleared_count=cleared, kept_count=scratchpad.tool_result_count()
        )
