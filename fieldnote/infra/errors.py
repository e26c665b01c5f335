"""Custom exception hierarchy for fieldnote.

All application-specific exceptions inherit from FieldnoteError,
which carries an error code that consumers (CLI, JSON output, channels)
map to user-facing text.
"""

from __future__ import annotations


class FieldnoteError(Exception):
    """Base exception for all fieldnote errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class AgentError(FieldnoteError):
    """Errors in the agent runtime."""

    def __init__(self, message: str, *, code: str = "AGENT_ERROR") -> None:
        super().__init__(message, code=code)


class LLMError(AgentError):
    """Errors from LLM API calls (timeouts, rate limits, failures)."""

    def __init__(self, message: str, *, code: str = "LLM_ERROR") -> None:
        super().__init__(message, code=code)


class ToolError(AgentError):
    """Errors during tool execution."""

    def __init__(self, message: str, *, code: str = "TOOL_ERROR") -> None:
        super().__init__(message, code=code)


class ApprovalError(AgentError):
    """Approval gate misuse, e.g. a second request while one is pending."""

    def __init__(self, message: str, *, code: str = "APPROVAL_ERROR") -> None:
        super().__init__(message, code=code)


class RunCancelledError(AgentError):
    """The run signal was aborted before the run reached a terminal event."""

    def __init__(self, message: str = "Run cancelled") -> None:
        super().__init__(message, code="RUN_CANCELLED")


class SessionError(FieldnoteError):
    """Errors in session persistence."""

    def __init__(self, message: str, *, code: str = "SESSION_ERROR") -> None:
        super().__init__(message, code=code)


class ChannelError(FieldnoteError):
    """Errors in channel adapters (Telegram, etc.)."""

    def __init__(self, message: str, *, code: str = "CHANNEL_ERROR") -> None:
        super().__init__(message, code=code)


class ConfigError(FieldnoteError):
    """Missing or invalid configuration."""

    def __init__(self, message: str, *, code: str = "CONFIG_ERROR") -> None:
        super().__init__(message, code=code)
