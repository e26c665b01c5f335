from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from fieldnote.tools.context import ToolContext


class RiskLevel(StrEnum):
    """Tool-level risk classification for approval gating.

    high: the tool has side effects and needs explicit user approval before
    it runs (unless already approved for the session).
    Undeclared tools default to 'high' (fail-closed).
    """

    low = "low"
    high = "high"


class BaseTool(ABC):
    """Abstract base class for agent tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name used in function calling."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what the tool does."""
        ...

    @property
    @abstractmethod
    def args_model(self) -> type[BaseModel]:
        """Pydantic model the call arguments are validated against."""
        ...

    @property
    def parameters(self) -> dict:
        """JSON Schema describing the tool's input parameters."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return schema

    @property
    def risk_level(self) -> RiskLevel:
        """Fail-closed default: high. Read-only tools should declare low."""
        return RiskLevel.high

    @property
    def requires_approval(self) -> bool:
        return self.risk_level == RiskLevel.high

    @property
    def max_calls_per_query(self) -> int | None:
        """Suggested per-query call limit. None = use the configured default."""
        return None

    def query_hint(self, arguments: dict[str, Any]) -> str | None:
        """Free-text argument used to detect near-duplicate calls, if any."""
        return None

    @abstractmethod
    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict | str:
        """Execute the tool with validated arguments and optional runtime context.

        context is injected by ToolExecutor with session_id, query and a
        progress sink. Raising signals failure; the executor reports it as
        a tool_error event.
        """
        ...
