from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from fieldnote.agent.approval import ApprovalDecision


@dataclass
class TokenUsage:
    """Token counts reported by the model provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class ToolCallRecord:
    """Externally reported summary of one completed tool call."""

    tool: str
    args: dict[str, Any]
    result: str


class _Event:
    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass
class Thinking(_Event):
    """Model narration that accompanied a batch of tool calls."""

    message: str
    type: Literal["thinking"] = "thinking"


@dataclass
class ToolStart(_Event):
    tool: str
    args: dict[str, Any]
    type: Literal["tool_start"] = "tool_start"


@dataclass
class ToolProgress(_Event):
    """Mid-execution progress reported by a long-running tool."""

    tool: str
    message: str
    type: Literal["tool_progress"] = "tool_progress"


@dataclass
class ToolEnd(_Event):
    tool: str
    args: dict[str, Any]
    result: str
    duration_ms: int
    type: Literal["tool_end"] = "tool_end"


@dataclass
class ToolFailed(_Event):
    """Tool execution failed. The run continues with the next call."""

    tool: str
    error: str
    type: Literal["tool_error"] = "tool_error"


@dataclass
class ToolApproval(_Event):
    tool: str
    args: dict[str, Any]
    approved: ApprovalDecision
    type: Literal["tool_approval"] = "tool_approval"


@dataclass
class ToolDenied(_Event):
    """Tool call rejected through the approval gate. Terminates the run."""

    tool: str
    args: dict[str, Any]
    type: Literal["tool_denied"] = "tool_denied"


@dataclass
class ToolLimit(_Event):
    """Suggested usage limit warning. Never blocks the call."""

    tool: str
    warning: str
    blocked: bool = False
    type: Literal["tool_limit"] = "tool_limit"


@dataclass
class ContextCleared(_Event):
    cleared_count: int
    kept_count: int
    type: Literal["context_cleared"] = "context_cleared"


@dataclass
class AnswerStart(_Event):
    type: Literal["answer_start"] = "answer_start"


@dataclass
class Done(_Event):
    """Terminal event. Exactly one per run, always last."""

    answer: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    iterations: int = 0
    total_time_ms: int = 0
    token_usage: TokenUsage | None = None
    tokens_per_second: float | None = None
    type: Literal["done"] = "done"


AgentEvent = (
    Thinking
    | ToolStart
    | ToolProgress
    | ToolEnd
    | ToolFailed
    | ToolApproval
    | ToolDenied
    | ToolLimit
    | ContextCleared
    | AnswerStart
    | Done
)
