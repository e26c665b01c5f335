"""Tests for AgentLoop: terminal paths, event ordering, streaming, cancellation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
from pydantic import BaseModel

from fieldnote.agent.agent import NO_TOOLS_ANSWER, AgentLoop
from fieldnote.agent.approval import ApprovalDecision, ApprovalRequest
from fieldnote.agent.cancellation import RunSignal
from fieldnote.agent.events import TokenUsage
from fieldnote.agent.model_client import (
    ModelClient,
    ModelResponse,
    StreamChunk,
    ToolCallRequest,
)
from fieldnote.config.settings import AgentSettings
from fieldnote.infra.errors import LLMError, RunCancelledError
from fieldnote.tools.base import BaseTool, RiskLevel
from fieldnote.tools.registry import ToolRegistry

# ── Fakes ──


class ScriptedModelClient(ModelClient):
    """Returns queued responses in order; records every prompt it was sent."""

    def __init__(
        self,
        responses: list[ModelResponse] | None = None,
        streams: list[list[StreamChunk] | Exception] | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.calls: list[dict] = []

    async def invoke(self, prompt, *, model, system_prompt, tools=None) -> ModelResponse:
        self.calls.append({"prompt": prompt, "tools": tools, "mode": "invoke"})
        if not self.responses:
            raise AssertionError("unexpected model call")
        return self.responses.pop(0)

    async def stream_invoke(
        self, prompt, *, model, system_prompt, tools=None
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append({"prompt": prompt, "tools": tools, "mode": "stream"})
        script = self.streams.pop(0)
        if isinstance(script, Exception):
            raise script
        for chunk in script:
            yield chunk


class HangingModelClient(ModelClient):
    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def invoke(self, prompt, *, model, system_prompt, tools=None) -> ModelResponse:
        self.started.set()
        await asyncio.sleep(10)
        return ModelResponse(content="never")

    async def stream_invoke(self, prompt, *, model, system_prompt, tools=None):
        raise NotImplementedError
        yield  # pragma: no cover


class _LookupArgs(BaseModel):
    symbol: str


class LookupTool(BaseTool):
    @property
    def name(self) -> str:
        return "lookup"

    @property
    def description(self) -> str:
        return "Look up a price"

    @property
    def args_model(self) -> type[BaseModel]:
        return _LookupArgs

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.low

    @property
    def max_calls_per_query(self) -> int | None:
        return 100

    async def execute(self, arguments: dict, context=None) -> dict:
        return {"symbol": arguments["symbol"], "price": 101.5}


class _NoteArgs(BaseModel):
    text: str


class SaveNoteTool(BaseTool):
    @property
    def name(self) -> str:
        return "save_note"

    @property
    def description(self) -> str:
        return "Persist a note"

    @property
    def args_model(self) -> type[BaseModel]:
        return _NoteArgs

    async def execute(self, arguments: dict, context=None) -> str:
        return "saved"


def _tool_call(name: str = "lookup", call_id: str = "c1", **args) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=args or {"symbol": "AAPL"})


def _text(content: str, usage: TokenUsage | None = None) -> ModelResponse:
    return ModelResponse(content=content, usage=usage)


def _calls(*calls: ToolCallRequest, content: str = "") -> ModelResponse:
    return ModelResponse(content=content, tool_calls=list(calls))


@pytest.fixture()
def registry():
    reg = ToolRegistry()
    reg.register(LookupTool())
    reg.register(SaveNoteTool())
    return reg


@pytest.fixture()
def settings(tmp_path):
    return AgentSettings(trace_dir=tmp_path / "traces")


async def _run(loop: AgentLoop, query: str = "price of AAPL?", history=None) -> list:
    return [event async for event in loop.run(query, history)]


def _types(events: list) -> list[str]:
    return [e.type for e in events]


# ── Terminal paths ──


class TestDirectResponse:
    @pytest.mark.asyncio()
    async def test_greeting_answered_without_tools(self, registry, settings):
        client = ScriptedModelClient([_text("Hello there!")])
        events = await _run(AgentLoop(client, registry, agent_settings=settings), "hi")

        assert _types(events) == ["answer_start", "done"]
        done = events[-1]
        assert done.answer == "Hello there!"
        assert done.iterations == 1
        assert done.tool_calls == []
        assert len(client.calls) == 1

    @pytest.mark.asyncio()
    async def test_first_call_sends_tool_schema(self, registry, settings):
        client = ScriptedModelClient([_text("hi")])
        await _run(AgentLoop(client, registry, agent_settings=settings))
        names = [t["function"]["name"] for t in client.calls[0]["tools"]]
        assert names == ["lookup", "save_note"]


class TestToolRound:
    @pytest.mark.asyncio()
    async def test_tool_then_final_answer(self, registry, settings):
        client = ScriptedModelClient(
            [
                _calls(_tool_call(), content="Let me check the price."),
                _text(""),
                _text("AAPL trades at 101.5."),
            ]
        )
        events = await _run(AgentLoop(client, registry, agent_settings=settings))

        assert _types(events) == [
            "thinking",
            "tool_start",
            "tool_end",
            "answer_start",
            "done",
        ]
        assert events[0].message == "Let me check the price."
        done = events[-1]
        assert done.answer == "AAPL trades at 101.5."
        assert done.iterations == 2
        assert [r.tool for r in done.tool_calls] == ["lookup"]

        # The final-answer call carries no tools and sees the evidence.
        final = client.calls[-1]
        assert final["tools"] is None
        assert "Output of lookup:" in final["prompt"]
        assert "Reasoning: Let me check the price." in final["prompt"]

    @pytest.mark.asyncio()
    async def test_second_iteration_prompt_contains_results(self, registry, settings):
        client = ScriptedModelClient([_calls(_tool_call()), _text(""), _text("done")])
        await _run(AgentLoop(client, registry, agent_settings=settings))

        second = client.calls[1]["prompt"]
        assert second.startswith("Query: price of AAPL?")
        assert "### lookup(symbol=AAPL)" in second
        assert "## Tool Usage This Query" in second

    @pytest.mark.asyncio()
    async def test_text_after_tools_still_goes_through_final_answer(self, registry, settings):
        client = ScriptedModelClient(
            [_calls(_tool_call()), _text("draft answer"), _text("polished answer")]
        )
        events = await _run(AgentLoop(client, registry, agent_settings=settings))
        assert events[-1].answer == "polished answer"
        assert len(client.calls) == 3

    @pytest.mark.asyncio()
    async def test_empty_narration_emits_no_thinking(self, registry, settings):
        client = ScriptedModelClient([_calls(_tool_call(), content="  "), _text(""), _text("x")])
        events = await _run(AgentLoop(client, registry, agent_settings=settings))
        assert "thinking" not in _types(events)

    @pytest.mark.asyncio()
    async def test_history_included_in_first_prompt(self, registry, settings):
        client = ScriptedModelClient([_text("ok")])
        await _run(
            AgentLoop(client, registry, agent_settings=settings),
            "and MSFT?",
            history=["price of AAPL?"],
        )
        prompt = client.calls[0]["prompt"]
        assert prompt.startswith("Current query to answer: and MSFT?")
        assert "1. price of AAPL?" in prompt


class TestMaxIterations:
    @pytest.mark.asyncio()
    async def test_exhaustion_forces_final_answer(self, registry, tmp_path):
        settings = AgentSettings(trace_dir=tmp_path, max_iterations=2)
        client = ScriptedModelClient(
            [
                _calls(_tool_call(call_id="a")),
                _calls(_tool_call(call_id="b", symbol="MSFT")),
                _text("Best effort answer."),
            ]
        )
        events = await _run(AgentLoop(client, registry, agent_settings=settings))

        assert _types(events).count("done") == 1
        assert events[-2].type == "answer_start"
        done = events[-1]
        assert done.answer == "Best effort answer."
        assert done.iterations == 2
        assert len(done.tool_calls) == 2

    @pytest.mark.asyncio()
    async def test_empty_final_answer_uses_fallback(self, registry, tmp_path):
        settings = AgentSettings(trace_dir=tmp_path, max_iterations=1)
        client = ScriptedModelClient([_calls(_tool_call()), _text("   ")])
        events = await _run(AgentLoop(client, registry, agent_settings=settings))
        assert events[-1].answer == "Reached maximum iterations (1)."

    @pytest.mark.asyncio()
    async def test_custom_fallback(self, registry, tmp_path):
        settings = AgentSettings(trace_dir=tmp_path, max_iterations=1)
        client = ScriptedModelClient([_calls(_tool_call()), _text("")])
        loop = AgentLoop(
            client, registry, agent_settings=settings, fallback_answer="Out of steps."
        )
        events = await _run(loop)
        assert events[-1].answer == "Out of steps."


class TestNoTools:
    @pytest.mark.asyncio()
    async def test_empty_registry_single_done(self, settings):
        client = ScriptedModelClient()
        events = await _run(AgentLoop(client, ToolRegistry(), agent_settings=settings))

        assert _types(events) == ["done"]
        assert events[0].answer == NO_TOOLS_ANSWER
        assert events[0].iterations == 0
        assert client.calls == []


class TestDenial:
    @pytest.mark.asyncio()
    async def test_denied_tool_ends_run_with_empty_answer(self, registry, settings):
        async def deny(request: ApprovalRequest) -> ApprovalDecision:
            return ApprovalDecision.deny

        client = ScriptedModelClient(
            [_calls(_tool_call("save_note", text="remember"), _tool_call(call_id="c2"))]
        )
        loop = AgentLoop(client, registry, agent_settings=settings, request_approval=deny)
        events = await _run(loop)

        assert _types(events) == ["tool_start", "tool_approval", "tool_denied", "done"]
        assert events[-1].answer == ""
        assert events[-1].tool_calls == []
        assert len(client.calls) == 1

    @pytest.mark.asyncio()
    async def test_denial_keeps_calls_completed_earlier_in_batch(self, registry, settings):
        async def deny(request: ApprovalRequest) -> ApprovalDecision:
            return ApprovalDecision.deny

        client = ScriptedModelClient(
            [
                _calls(
                    _tool_call(call_id="c1"),
                    _tool_call("save_note", call_id="c2", text="remember"),
                    _tool_call(call_id="c3", symbol="MSFT"),
                )
            ]
        )
        loop = AgentLoop(client, registry, agent_settings=settings, request_approval=deny)
        events = await _run(loop)

        assert _types(events) == [
            "tool_start",
            "tool_end",
            "tool_start",
            "tool_approval",
            "tool_denied",
            "done",
        ]
        done = events[-1]
        assert done.answer == ""
        assert len(done.tool_calls) == 1
        assert done.tool_calls[0].tool == "lookup"
        assert done.tool_calls[0].args == {"symbol": "AAPL"}
        assert '"price": 101.5' in done.tool_calls[0].result
        assert len(client.calls) == 1

    @pytest.mark.asyncio()
    async def test_session_approval_shared_across_runs(self, registry, settings):
        asked: list[str] = []

        async def allow_session(request: ApprovalRequest) -> ApprovalDecision:
            asked.append(request.tool)
            return ApprovalDecision.allow_session

        approved: set[str] = set()
        for _ in range(2):
            client = ScriptedModelClient(
                [_calls(_tool_call("save_note", text="x")), _text(""), _text("ok")]
            )
            loop = AgentLoop(
                client,
                registry,
                agent_settings=settings,
                request_approval=allow_session,
                session_approved_tools=approved,
            )
            await _run(loop)

        assert asked == ["save_note"]
        assert approved == {"save_note"}


class TestToolErrors:
    @pytest.mark.asyncio()
    async def test_unknown_tool_does_not_end_run(self, registry, settings):
        client = ScriptedModelClient(
            [_calls(_tool_call("missing", x=1)), _text(""), _text("Could not fetch.")]
        )
        events = await _run(AgentLoop(client, registry, agent_settings=settings))

        assert _types(events) == ["tool_start", "tool_error", "answer_start", "done"]
        assert events[-1].answer == "Could not fetch."
        assert events[-1].tool_calls[0].result.startswith("Error: Unknown tool")


class TestContextThreshold:
    @pytest.mark.asyncio()
    async def test_context_cleared_event(self, registry, tmp_path):
        class _Huge:
            def estimate(self, text: str) -> int:
                return 10**9

        settings = AgentSettings(trace_dir=tmp_path, keep_tool_uses=1)
        client = ScriptedModelClient(
            [
                _calls(_tool_call(call_id="a"), _tool_call(call_id="b", symbol="MSFT")),
                _text(""),
                _text("answer"),
            ]
        )
        loop = AgentLoop(client, registry, agent_settings=settings, estimator=_Huge())
        events = await _run(loop)

        cleared = [e for e in events if e.type == "context_cleared"]
        assert len(cleared) == 1
        assert cleared[0].cleared_count == 1
        assert cleared[0].kept_count == 1
        assert "symbol=AAPL" not in client.calls[1]["prompt"]
        assert "symbol=MSFT" in client.calls[1]["prompt"]
        # Records still report every call.
        assert len(events[-1].tool_calls) == 2

    @pytest.mark.asyncio()
    async def test_final_answer_sees_evicted_results(self, registry, tmp_path):
        class _Huge:
            def estimate(self, text: str) -> int:
                return 10**9

        settings = AgentSettings(trace_dir=tmp_path, keep_tool_uses=1)
        client = ScriptedModelClient(
            [
                _calls(_tool_call(call_id="a"), _tool_call(call_id="b", symbol="MSFT")),
                _text(""),
                _text("answer"),
            ]
        )
        loop = AgentLoop(client, registry, agent_settings=settings, estimator=_Huge())
        await _run(loop)

        final = client.calls[-1]
        assert final["tools"] is None
        assert '"symbol": "AAPL"' in final["prompt"]
        assert '"symbol": "MSFT"' in final["prompt"]


class TestUsage:
    @pytest.mark.asyncio()
    async def test_usage_accumulated_across_calls(self, registry, settings):
        client = ScriptedModelClient(
            [
                ModelResponse(
                    tool_calls=[_tool_call()],
                    usage=TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15),
                ),
                _text("", TokenUsage(input_tokens=20, output_tokens=1, total_tokens=21)),
                _text("final", TokenUsage(input_tokens=30, output_tokens=7, total_tokens=37)),
            ]
        )
        events = await _run(AgentLoop(client, registry, agent_settings=settings))
        assert events[-1].token_usage == TokenUsage(60, 13, 73)

    @pytest.mark.asyncio()
    async def test_no_usage_reported(self, registry, settings):
        client = ScriptedModelClient([_text("hi")])
        events = await _run(AgentLoop(client, registry, agent_settings=settings))
        assert events[-1].token_usage is None
        assert events[-1].tokens_per_second is None


class TestStreaming:
    @pytest.mark.asyncio()
    async def test_deltas_forwarded_with_kind(self, registry, tmp_path):
        settings = AgentSettings(trace_dir=tmp_path, streaming=True)
        client = ScriptedModelClient(
            streams=[
                [
                    StreamChunk(content="Checking "),
                    StreamChunk(content="price."),
                    StreamChunk(done=True, tool_calls=[_tool_call()]),
                ],
                [StreamChunk(done=True)],
                [StreamChunk(content="101.5"), StreamChunk(done=True)],
            ]
        )
        deltas: list[tuple[str, str]] = []
        loop = AgentLoop(
            client,
            registry,
            agent_settings=settings,
            delta_sink=lambda kind, text: deltas.append((kind, text)),
        )
        events = await _run(loop)

        assert deltas == [
            ("thinking", "Checking "),
            ("thinking", "price."),
            ("answer", "101.5"),
        ]
        assert events[0].message == "Checking price."
        assert events[-1].answer == "101.5"

    @pytest.mark.asyncio()
    async def test_stream_failure_falls_back_to_invoke(self, registry, tmp_path):
        settings = AgentSettings(trace_dir=tmp_path, streaming=True)
        client = ScriptedModelClient(
            responses=[_text("from invoke")],
            streams=[LLMError("stream broke")],
        )
        events = await _run(AgentLoop(client, registry, agent_settings=settings))

        assert events[-1].answer == "from invoke"
        assert [c["mode"] for c in client.calls] == ["stream", "invoke"]


class TestErrors:
    @pytest.mark.asyncio()
    async def test_model_error_propagates(self, registry, settings):
        class _Broken(ScriptedModelClient):
            async def invoke(self, prompt, *, model, system_prompt, tools=None):
                raise LLMError("provider down")

        with pytest.raises(LLMError, match="provider down"):
            await _run(AgentLoop(_Broken(), registry, agent_settings=settings))


class TestCancellation:
    @pytest.mark.asyncio()
    async def test_pre_aborted_signal(self, registry, settings):
        signal = RunSignal()
        signal.abort()
        client = ScriptedModelClient([_text("hi")])
        with pytest.raises(RunCancelledError):
            await _run(AgentLoop(client, registry, agent_settings=settings, signal=signal))
        assert client.calls == []

    @pytest.mark.asyncio()
    async def test_abort_during_model_call(self, registry, settings):
        signal = RunSignal()
        client = HangingModelClient()

        async def abort_when_started():
            await client.started.wait()
            signal.abort()

        aborter = asyncio.create_task(abort_when_started())
        events: list = []
        with pytest.raises(RunCancelledError):
            async for event in AgentLoop(
                client, registry, agent_settings=settings, signal=signal
            ).run("q"):
                events.append(event)
        await aborter
        assert "done" not in _types(events)


class TestTrace:
    @pytest.mark.asyncio()
    async def test_trace_file_written(self, registry, settings):
        client = ScriptedModelClient(
            [_calls(_tool_call(), content="Looking."), _text(""), _text("x")]
        )
        await _run(AgentLoop(client, registry, agent_settings=settings))

        files = list(settings.trace_dir.glob("*.jsonl"))
        assert len(files) == 1
        lines = files[0].read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3  # init, thinking, tool_result
