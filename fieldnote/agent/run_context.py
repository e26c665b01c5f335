from __future__ import annotations

import time
from dataclasses import dataclass, field

from fieldnote.agent.events import TokenUsage
from fieldnote.agent.scratchpad import Scratchpad


class UsageTracker:
    """Cumulative token usage across every model call in a run."""

    def __init__(self) -> None:
        self._usage: TokenUsage | None = None

    def add(self, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        self._usage = usage if self._usage is None else self._usage + usage

    @property
    def usage(self) -> TokenUsage | None:
        return self._usage

    def tokens_per_second(self, elapsed_ms: int) -> float | None:
        if self._usage is None or elapsed_ms <= 0:
            return None
        return round(self._usage.output_tokens / (elapsed_ms / 1000), 2)


@dataclass
class RunContext:
    """Mutable per-query state. Exclusively owned by one active run."""

    query: str
    scratchpad: Scratchpad
    start_time: float = field(default_factory=time.monotonic)
    iteration: int = 0
    usage: UsageTracker = field(default_factory=UsageTracker)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)
