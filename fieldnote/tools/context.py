from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass


def _discard(message: str) -> None:
    return None


@dataclass(frozen=True)
class ToolContext:
    """Runtime context injected into tool execution by ToolExecutor.

    session_id: current session identifier (for audit/logging).
    query: the user query of the run that requested the tool.
    progress: sink for mid-execution progress; surfaced as tool_progress events.
    """

    session_id: str = "main"
    query: str = ""
    progress: Callable[[str], None] = _discard

    def report_progress(self, message: str) -> None:
        self.progress(message)
