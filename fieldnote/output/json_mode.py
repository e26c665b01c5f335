"""Structured (single JSON object) output for non-interactive use.

Everything the run logs goes to stderr; stdout carries exactly one
JsonResponse per invocation.
"""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator, Callable
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal, Protocol, TextIO

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from fieldnote.agent.events import AgentEvent, Done, ToolStart
from fieldnote.infra.errors import AgentError, ConfigError, LLMError

logger = structlog.get_logger()


class ErrorCode(StrEnum):
    NO_QUERY = "NO_QUERY"
    AGENT_ERROR = "AGENT_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ToolRecord(_CamelModel):
    name: str
    args: dict[str, Any]
    result: str


class TokenUsageInfo(_CamelModel):
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    total_tokens: int = Field(ge=0)


class ResponseMetadata(_CamelModel):
    model: str
    iterations: int = Field(0, ge=0)
    total_time_ms: int = Field(0, ge=0)
    token_usage: TokenUsageInfo | None = None


class ErrorDetail(_CamelModel):
    code: ErrorCode
    message: str


class JsonResponse(_CamelModel):
    status: Literal["success", "error"]
    query: str
    answer: str = ""
    tools: list[ToolRecord] = Field(default_factory=list)
    scratchpad_file: str = ""
    metadata: ResponseMetadata
    error: ErrorDetail | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


_PROVIDER_KEYWORDS = (
    "api key",
    "authentication",
    "unauthorized",
    "401",
    "403",
    "rate limit",
    "quota",
)
_CONFIG_KEYWORDS = ("config", "settings", "not configured", "missing")
_AGENT_KEYWORDS = ("agent", "tool", "iteration", "timeout")


def classify_error(error: BaseException) -> ErrorCode:
    """Map an exception to an ErrorCode: by type first, then by message keywords."""
    if isinstance(error, LLMError):
        return ErrorCode.PROVIDER_ERROR
    if isinstance(error, (ConfigError, ValidationError)):
        return ErrorCode.CONFIG_ERROR
    if isinstance(error, AgentError):
        return ErrorCode.AGENT_ERROR

    message = str(error).lower()
    if any(k in message for k in _PROVIDER_KEYWORDS):
        return ErrorCode.PROVIDER_ERROR
    if any(k in message for k in _CONFIG_KEYWORDS):
        return ErrorCode.CONFIG_ERROR
    if any(k in message for k in _AGENT_KEYWORDS):
        return ErrorCode.AGENT_ERROR
    return ErrorCode.UNKNOWN_ERROR


def build_success_response(
    query: str, done: Done, scratchpad_file: str, model: str
) -> JsonResponse:
    usage = done.token_usage
    return JsonResponse(
        status="success",
        query=query,
        answer=done.answer,
        tools=[ToolRecord(name=tc.tool, args=tc.args, result=tc.result) for tc in done.tool_calls],
        scratchpad_file=scratchpad_file,
        metadata=ResponseMetadata(
            model=model,
            iterations=done.iterations,
            total_time_ms=done.total_time_ms,
            token_usage=(
                TokenUsageInfo(
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    total_tokens=usage.total_tokens,
                )
                if usage is not None
                else None
            ),
        ),
    )


def build_error_response(
    query: str,
    code: ErrorCode,
    message: str,
    *,
    scratchpad_file: str = "",
    model: str = "",
) -> JsonResponse:
    return JsonResponse(
        status="error",
        query=query,
        scratchpad_file=scratchpad_file,
        metadata=ResponseMetadata(model=model),
        error=ErrorDetail(code=code, message=message),
    )


def find_latest_trace(trace_dir: Path) -> str:
    """Path of the most recently modified trace file, or '' when none exist."""
    if not trace_dir.is_dir():
        return ""
    traces = sorted(trace_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)
    return str(traces[0]) if traces else ""


def resolve_query(words: list[str], stdin: TextIO | None = None) -> str:
    """Query from positional words, else from piped stdin, else ''."""
    query = " ".join(words).strip()
    if query:
        return query
    stream = stdin if stdin is not None else sys.stdin
    if stream is None or stream.isatty():
        return ""
    return stream.read().strip()


class _Runnable(Protocol):
    def run(self, query: str) -> AsyncIterator[AgentEvent]: ...


async def execute_json_query(
    query: str,
    *,
    agent_factory: Callable[[], _Runnable],
    model: str,
    trace_dir: Path,
) -> tuple[JsonResponse, int]:
    """Run one query and build the response. Returns (response, exit_code).

    Never raises for run failures: they become error responses with exit 1.
    """
    if not query:
        return (
            build_error_response(
                "",
                ErrorCode.NO_QUERY,
                "No query provided. Pass a query as an argument or pipe it via stdin.",
                model=model,
            ),
            1,
        )

    done: Done | None = None
    try:
        agent = agent_factory()
        async for event in agent.run(query):
            if isinstance(event, ToolStart):
                logger.info("json_tool_start", tool_name=event.tool)
            elif isinstance(event, Done):
                done = event
    except Exception as e:
        code = classify_error(e)
        logger.error("json_query_failed", code=code.value, error=str(e))
        return build_error_response(query, code, str(e), model=model), 1

    if done is None:
        return (
            build_error_response(
                query, ErrorCode.AGENT_ERROR, "Agent did not produce a result.", model=model
            ),
            1,
        )
    return build_success_response(query, done, find_latest_trace(trace_dir), model), 0
