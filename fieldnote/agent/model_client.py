from __future__ import annotations

import asyncio
import json
import random
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from openai import (
    NOT_GIVEN,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from fieldnote.agent.events import TokenUsage
from fieldnote.infra.errors import LLMError

logger = structlog.get_logger()

T = TypeVar("T")

_RETRYABLE = (APIConnectionError, APITimeoutError, RateLimitError)


@dataclass(frozen=True)
class ToolCallRequest:
    """A structured tool invocation emitted by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: TokenUsage | None = None


@dataclass
class StreamChunk:
    """One incremental delivery unit.

    Content chunks carry text only. The final chunk has done=True and carries
    the accumulated tool calls and usage (when the provider reports it).
    """

    content: str = ""
    done: bool = False
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: TokenUsage | None = None


class ModelClient(ABC):
    """Abstract base class for LLM model clients."""

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> ModelResponse:
        """Blocking call. Returns text and/or tool calls."""
        ...

    @abstractmethod
    def stream_invoke(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Incremental call. Yields content chunks, then a single done chunk."""
        ...


def _messages(prompt: str, system_prompt: str) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": prompt},
    ]


def _safe_parse_args(raw: str | None, *, tool_name: str = "") -> dict[str, Any]:
    """Parse tool-call argument JSON. Malformed or non-object input becomes {}."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("tool_args_parse_failed", tool_name=tool_name, error=str(e))
        return {}
    if not isinstance(parsed, dict):
        logger.warning(
            "tool_args_not_object", tool_name=tool_name, type=type(parsed).__name__
        )
        return {}
    return parsed


def _usage(raw) -> TokenUsage | None:
    if raw is None:
        return None
    return TokenUsage(
        input_tokens=raw.prompt_tokens or 0,
        output_tokens=raw.completion_tokens or 0,
        total_tokens=raw.total_tokens or 0,
    )


def _first_choice(response, *, context: str = ""):
    """Extract first choice from response, raising LLMError if empty."""
    if not response.choices:
        raise LLMError(f"Empty choices from provider ({context})")
    return response.choices[0]


class OpenAICompatModelClient(ModelClient):
    """Model client using the OpenAI SDK.

    Works with OpenAI, Gemini, and Ollama via OpenAI-compatible endpoints.
    Includes exponential backoff retry for transient errors.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._max_retries = max_retries
        self._base_delay = base_delay

    async def _retry_call(
        self,
        coro_factory: Callable[[], Coroutine[Any, Any, T]],
        *,
        context: str = "",
    ) -> T:
        """Execute an async call with exponential backoff retry.

        Retries on: APIConnectionError, APITimeoutError, RateLimitError.
        Non-retryable API errors are wrapped in LLMError.
        """
        for attempt in range(self._max_retries + 1):
            try:
                return await coro_factory()
            except _RETRYABLE as e:
                if attempt == self._max_retries:
                    raise LLMError(
                        f"LLM call failed after {self._max_retries + 1} attempts: {e}"
                    ) from e
                delay = self._base_delay * (2**attempt) + random.uniform(0, 0.5)
                logger.warning(
                    "llm_retry",
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                    delay=round(delay, 2),
                    error=str(e),
                    context=context,
                )
                await asyncio.sleep(delay)
            except APIStatusError as e:
                raise LLMError(f"LLM API error: {e.status_code} {e.message}") from e
        raise LLMError("Retry loop exhausted")  # pragma: no cover

    async def invoke(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> ModelResponse:
        logger.debug("invoke_request", model=model, tool_count=len(tools) if tools else 0)
        response = await self._retry_call(
            lambda: self._client.chat.completions.create(
                model=model,
                messages=_messages(prompt, system_prompt),
                tools=tools if tools else NOT_GIVEN,
            ),
            context="invoke",
        )
        message = _first_choice(response, context="invoke").message
        tool_calls = [
            ToolCallRequest(
                id=tc.id,
                name=tc.function.name,
                arguments=_safe_parse_args(tc.function.arguments, tool_name=tc.function.name),
            )
            for tc in message.tool_calls or []
        ]
        logger.debug(
            "invoke_response",
            has_content=bool(message.content),
            tool_calls=len(tool_calls),
        )
        return ModelResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            usage=_usage(getattr(response, "usage", None)),
        )

    async def stream_invoke(
        self,
        prompt: str,
        *,
        model: str,
        system_prompt: str,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream content immediately; accumulate tool-call fragments by index.

        OpenAI streaming tool_calls format:
        - First chunk per tool: {index, id, function: {name, arguments: ""}}
        - Subsequent chunks: {index, function: {arguments: "partial..."}}
        - Arguments are partial JSON strings that must be concatenated.
        """
        logger.debug(
            "stream_invoke_request", model=model, tool_count=len(tools) if tools else 0
        )
        stream = await self._retry_call(
            lambda: self._client.chat.completions.create(
                model=model,
                messages=_messages(prompt, system_prompt),
                tools=tools if tools else NOT_GIVEN,
                stream=True,
                stream_options={"include_usage": True},
            ),
            context="stream_invoke",
        )

        pending: dict[int | str, dict[str, str]] = {}
        last_key: int | str | None = None
        usage: TokenUsage | None = None

        async for chunk in stream:
            # The usage-only chunk arrives last with an empty choices list.
            if getattr(chunk, "usage", None) is not None:
                usage = _usage(chunk.usage)
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta

            if delta.content:
                yield StreamChunk(content=delta.content)

            if delta.tool_calls:
                for tc_delta in delta.tool_calls:
                    # Gemini sends index=None and one complete call per fragment.
                    key = tc_delta.index
                    if key is None:
                        key = tc_delta.id or last_key or 0
                    last_key = key
                    entry = pending.setdefault(key, {"id": "", "name": "", "arguments": ""})
                    if tc_delta.id:
                        entry["id"] = tc_delta.id
                    if tc_delta.function:
                        if tc_delta.function.name:
                            entry["name"] = tc_delta.function.name
                        if tc_delta.function.arguments:
                            entry["arguments"] += tc_delta.function.arguments

        tool_calls = [
            ToolCallRequest(
                id=entry["id"],
                name=entry["name"],
                arguments=_safe_parse_args(entry["arguments"], tool_name=entry["name"]),
            )
            for entry in pending.values()
        ]
        yield StreamChunk(done=True, tool_calls=tool_calls, usage=usage)
