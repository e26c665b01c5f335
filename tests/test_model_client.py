"""Tests for OpenAICompatModelClient: parsing, stream accumulation, retries."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import NOT_GIVEN, APIConnectionError, APIStatusError

from fieldnote.agent.events import TokenUsage
from fieldnote.agent.model_client import OpenAICompatModelClient, StreamChunk
from fieldnote.infra.errors import LLMError

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


@pytest.fixture()
def client():
    c = OpenAICompatModelClient(api_key="test-key", max_retries=0)
    c._client = MagicMock()
    return c


def _usage(prompt=3, completion=2, total=5):
    return SimpleNamespace(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def _response(content=None, tool_calls=None, usage=None, choices=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    if choices is None:
        choices = [SimpleNamespace(message=message)]
    return SimpleNamespace(choices=choices, usage=usage)


def _tc_delta(*, index, call_id=None, name=None, args=None):
    fn = None
    if name is not None or args is not None:
        fn = SimpleNamespace(name=name, arguments=args)
    return SimpleNamespace(index=index, id=call_id, function=fn)


def _chunk(*, content=None, tool_calls=None, usage=None, empty=False):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    choices = [] if empty else [SimpleNamespace(delta=delta)]
    return SimpleNamespace(choices=choices, usage=usage)


def _stream_from(chunks):
    async def _gen():
        for c in chunks:
            yield c

    return _gen()


async def _collect(client, **kwargs) -> list[StreamChunk]:
    return [
        chunk
        async for chunk in client.stream_invoke(
            "hi", model="test-model", system_prompt="sys", **kwargs
        )
    ]


class TestInvoke:
    @pytest.mark.asyncio()
    async def test_text_response(self, client):
        client._client.chat.completions.create = AsyncMock(
            return_value=_response(content="hello", usage=_usage())
        )
        response = await client.invoke("hi", model="test-model", system_prompt="sys")

        assert response.content == "hello"
        assert response.tool_calls == []
        assert response.usage == TokenUsage(3, 2, 5)

    @pytest.mark.asyncio()
    async def test_messages_and_no_tools(self, client):
        create = AsyncMock(return_value=_response(content="x"))
        client._client.chat.completions.create = create
        await client.invoke("question", model="m", system_prompt="be brief")

        kwargs = create.call_args.kwargs
        assert kwargs["model"] == "m"
        assert kwargs["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "question"},
        ]
        assert kwargs["tools"] is NOT_GIVEN

    @pytest.mark.asyncio()
    async def test_tool_calls_parsed(self, client):
        client._client.chat.completions.create = AsyncMock(
            return_value=_response(
                tool_calls=[
                    _tool_call("c1", "read_file", '{"path": "a.txt"}'),
                    _tool_call("c2", "current_time", ""),
                ]
            )
        )
        response = await client.invoke(
            "hi", model="m", system_prompt="s", tools=[{"type": "function"}]
        )

        assert response.content == ""
        assert [(tc.id, tc.name, tc.arguments) for tc in response.tool_calls] == [
            ("c1", "read_file", {"path": "a.txt"}),
            ("c2", "current_time", {}),
        ]
        assert response.usage is None

    @pytest.mark.asyncio()
    async def test_malformed_arguments_become_empty(self, client):
        client._client.chat.completions.create = AsyncMock(
            return_value=_response(
                tool_calls=[
                    _tool_call("c1", "read_file", '{"path": '),
                    _tool_call("c2", "read_file", "[1, 2]"),
                ]
            )
        )
        response = await client.invoke("hi", model="m", system_prompt="s")
        assert [tc.arguments for tc in response.tool_calls] == [{}, {}]

    @pytest.mark.asyncio()
    async def test_empty_choices_raises_llm_error(self, client):
        client._client.chat.completions.create = AsyncMock(return_value=_response(choices=[]))
        with pytest.raises(LLMError, match="Empty choices"):
            await client.invoke("hi", model="m", system_prompt="s")


class TestRetry:
    @pytest.mark.asyncio()
    async def test_transient_error_retried_then_succeeds(self):
        c = OpenAICompatModelClient(api_key="k", max_retries=2, base_delay=0.0)
        c._client = MagicMock()
        c._client.chat.completions.create = AsyncMock(
            side_effect=[APIConnectionError(request=_REQUEST), _response(content="ok")]
        )
        with patch("fieldnote.agent.model_client.random.uniform", return_value=0.0):
            response = await c.invoke("hi", model="m", system_prompt="s")
        assert response.content == "ok"
        assert c._client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio()
    async def test_exhausted_retries_raise_llm_error(self):
        c = OpenAICompatModelClient(api_key="k", max_retries=1, base_delay=0.0)
        c._client = MagicMock()
        c._client.chat.completions.create = AsyncMock(
            side_effect=APIConnectionError(request=_REQUEST)
        )
        with (
            patch("fieldnote.agent.model_client.random.uniform", return_value=0.0),
            pytest.raises(LLMError, match="after 2 attempts"),
        ):
            await c.invoke("hi", model="m", system_prompt="s")

    @pytest.mark.asyncio()
    async def test_status_error_not_retried(self, client):
        error = APIStatusError(
            "bad request",
            response=httpx.Response(400, request=_REQUEST),
            body=None,
        )
        client._client.chat.completions.create = AsyncMock(side_effect=error)
        with pytest.raises(LLMError, match="400"):
            await client.invoke("hi", model="m", system_prompt="s")
        assert client._client.chat.completions.create.await_count == 1


class TestStreamInvoke:
    @pytest.mark.asyncio()
    async def test_content_chunks_then_done(self, client):
        client._client.chat.completions.create = AsyncMock(
            return_value=_stream_from(
                [
                    _chunk(content="Hel"),
                    _chunk(content="lo"),
                    _chunk(empty=True, usage=_usage(10, 4, 14)),
                ]
            )
        )
        chunks = await _collect(client)

        assert [c.content for c in chunks[:-1]] == ["Hel", "lo"]
        assert chunks[-1].done is True
        assert chunks[-1].tool_calls == []
        assert chunks[-1].usage == TokenUsage(10, 4, 14)
        assert sum(1 for c in chunks if c.done) == 1

    @pytest.mark.asyncio()
    async def test_requests_usage_in_stream(self, client):
        create = AsyncMock(return_value=_stream_from([]))
        client._client.chat.completions.create = create
        chunks = await _collect(client)

        assert create.call_args.kwargs["stream"] is True
        assert create.call_args.kwargs["stream_options"] == {"include_usage": True}
        assert len(chunks) == 1
        assert chunks[0].done is True
        assert chunks[0].usage is None

    @pytest.mark.asyncio()
    async def test_openai_index_fragments_accumulate(self, client):
        chunks = [
            _chunk(
                tool_calls=[
                    _tc_delta(index=0, call_id="call_1", name="read_file", args='{"path":"'),
                    _tc_delta(index=1, call_id="call_2", name="read_file", args='{"path":"b"}'),
                ]
            ),
            _chunk(tool_calls=[_tc_delta(index=0, args='a.txt"}')]),
        ]
        client._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        done = (await _collect(client, tools=[{"type": "function"}]))[-1]

        assert [(tc.id, tc.name, tc.arguments) for tc in done.tool_calls] == [
            ("call_1", "read_file", {"path": "a.txt"}),
            ("call_2", "read_file", {"path": "b"}),
        ]

    @pytest.mark.asyncio()
    async def test_null_index_calls_do_not_concatenate(self, client):
        chunks = [
            _chunk(
                tool_calls=[
                    _tc_delta(
                        index=None,
                        call_id=f"function-call-{i}",
                        name="read_file",
                        args=f'{{"path":"{name}"}}',
                    )
                    for i, name in enumerate(["a", "b", "c"], start=1)
                ]
            ),
        ]
        client._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        done = (await _collect(client, tools=[{"type": "function"}]))[-1]

        assert [tc.id for tc in done.tool_calls] == [
            "function-call-1",
            "function-call-2",
            "function-call-3",
        ]
        assert [tc.arguments for tc in done.tool_calls] == [
            {"path": "a"},
            {"path": "b"},
            {"path": "c"},
        ]

    @pytest.mark.asyncio()
    async def test_malformed_streamed_arguments_become_empty(self, client):
        chunks = [_chunk(tool_calls=[_tc_delta(index=0, call_id="c", name="t", args="{oops")])]
        client._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        done = (await _collect(client))[-1]
        assert done.tool_calls[0].arguments == {}
