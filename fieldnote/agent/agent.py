from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

import structlog

from fieldnote.agent.context_threshold import (
    ContextThresholdManager,
    TokenEstimator,
    build_estimator,
)
from fieldnote.agent.events import AgentEvent, AnswerStart, Done, Thinking, ToolDenied
from fieldnote.agent.model_client import ModelClient, ModelResponse
from fieldnote.agent.prompts import (
    build_final_answer_context,
    build_final_answer_prompt,
    build_initial_prompt,
    build_iteration_prompt,
    build_system_prompt,
)
from fieldnote.agent.run_context import RunContext
from fieldnote.agent.scratchpad import Scratchpad
from fieldnote.agent.tool_executor import ToolExecutor
from fieldnote.config.settings import AgentSettings
from fieldnote.infra.errors import RunCancelledError

if TYPE_CHECKING:
    from fieldnote.agent.approval import ApprovalCallback
    from fieldnote.agent.cancellation import RunSignal
    from fieldnote.tools.registry import ToolRegistry

logger = structlog.get_logger()

T = TypeVar("T")

NO_TOOLS_ANSWER = (
    "No tools are available, so I cannot research this query. "
    "Register at least one tool and try again."
)

# (kind, text) where kind is "thinking" for iteration calls, "answer" for the
# final-answer call.
DeltaSink = Callable[[str, str], None]


class AgentLoop:
    """Drives one query from prompt to final answer.

    Flow: query → LLM → (tool_calls → executor → threshold check → LLM)* →
          direct answer | final-answer call | forced final answer

    Every run ends with exactly one Done event. Model errors (LLMError) and
    cancellation (RunCancelledError) propagate to the caller; tool denial and
    iteration exhaustion are normal terminal paths.
    """

    def __init__(
        self,
        model_client: ModelClient,
        tool_registry: ToolRegistry,
        *,
        model: str = "gpt-4o-mini",
        agent_settings: AgentSettings | None = None,
        request_approval: ApprovalCallback | None = None,
        session_approved_tools: set[str] | None = None,
        signal: RunSignal | None = None,
        estimator: TokenEstimator | None = None,
        delta_sink: DeltaSink | None = None,
        fallback_answer: str | None = None,
        session_id: str = "main",
    ) -> None:
        self._model_client = model_client
        self._registry = tool_registry
        self._model = model
        self._settings = agent_settings or AgentSettings()
        self._signal = signal
        self._delta_sink = delta_sink
        self._fallback_answer = (
            fallback_answer
            if fallback_answer is not None
            else f"Reached maximum iterations ({self._settings.max_iterations})."
        )
        self._threshold = ContextThresholdManager(
            estimator or build_estimator(self._settings, model),
            threshold=self._settings.context_threshold,
            keep_count=self._settings.keep_tool_uses,
        )
        self._executor = ToolExecutor(
            tool_registry,
            request_approval=request_approval,
            session_approved_tools=session_approved_tools,
            signal=signal,
            session_id=session_id,
        )

    async def run(
        self, query: str, history: list[str] | None = None
    ) -> AsyncIterator[AgentEvent]:
        """Run the query and yield events. The last event is always Done."""
        scratchpad = Scratchpad(
            query,
            self._settings.trace_dir,
            default_tool_call_limit=self._settings.default_tool_call_limit,
            similarity_threshold=self._settings.query_similarity_threshold,
        )
        ctx = RunContext(query=query, scratchpad=scratchpad)
        log = logger.bind(trace_file=scratchpad.trace_path.name, model=self._model)
        log.info("run_started", max_iterations=self._settings.max_iterations)

        if len(self._registry) == 0:
            log.warning("run_without_tools")
            yield self._done(ctx, NO_TOOLS_ANSWER)
            return

        system_prompt = build_system_prompt(self._registry)
        tools_schema = self._registry.get_tools_schema()
        prompt = build_initial_prompt(query, history)

        while ctx.iteration < self._settings.max_iterations:
            self._check_signal()
            ctx.iteration += 1
            response = await self._call_model(
                ctx, prompt, system_prompt, tools=tools_schema, kind="thinking"
            )

            if not response.tool_calls:
                if not scratchpad.has_tool_results() and response.content.strip():
                    log.info("direct_response", iteration=ctx.iteration)
                    yield AnswerStart()
                    yield self._done(ctx, response.content)
                    return
                yield AnswerStart()
                answer = await self._final_answer(ctx, system_prompt)
                yield self._done(ctx, answer)
                return

            narration = response.content.strip()
            if narration:
                scratchpad.add_thinking(narration)
                yield Thinking(message=narration)

            log.info(
                "tool_round",
                iteration=ctx.iteration,
                tool_calls=[tc.name for tc in response.tool_calls],
            )
            denied = False
            async for event in self._executor.execute_all(response.tool_calls, ctx):
                yield event
                if isinstance(event, ToolDenied):
                    denied = True
            if denied:
                # An abort resolves a pending approval as deny; report it as cancellation.
                self._check_signal()
                log.info("run_denied", iteration=ctx.iteration)
                yield self._done(ctx, "")
                return

            cleared = self._threshold.check(system_prompt, query, scratchpad)
            if cleared is not None:
                yield cleared

            prompt = build_iteration_prompt(
                query,
                scratchpad.get_tool_results(),
                scratchpad.format_tool_usage_for_prompt(),
            )

        log.warning("max_iterations_reached", iterations=ctx.iteration)
        yield AnswerStart()
        answer = await self._final_answer(ctx, system_prompt)
        yield self._done(ctx, answer.strip() or self._fallback_answer)

    # ── Model calls ──────────────────────────────────────────────────────

    async def _final_answer(self, ctx: RunContext, system_prompt: str) -> str:
        """One tool-less model call over the consolidated scratchpad."""
        self._check_signal()
        context = build_final_answer_context(ctx.scratchpad)
        response = await self._call_model(
            ctx,
            build_final_answer_prompt(ctx.query, context),
            system_prompt,
            tools=None,
            kind="answer",
        )
        return response.content

    async def _call_model(
        self,
        ctx: RunContext,
        prompt: str,
        system_prompt: str,
        *,
        tools: list[dict] | None,
        kind: str,
    ) -> ModelResponse:
        if self._settings.streaming:
            try:
                response = await self._guard(
                    self._stream(prompt, system_prompt, tools=tools, kind=kind)
                )
            except RunCancelledError:
                raise
            except Exception as e:
                logger.warning("stream_fallback", error=str(e), kind=kind)
                response = await self._guard(
                    self._model_client.invoke(
                        prompt, model=self._model, system_prompt=system_prompt, tools=tools
                    )
                )
        else:
            response = await self._guard(
                self._model_client.invoke(
                    prompt, model=self._model, system_prompt=system_prompt, tools=tools
                )
            )
        ctx.usage.add(response.usage)
        return response

    async def _stream(
        self, prompt: str, system_prompt: str, *, tools: list[dict] | None, kind: str
    ) -> ModelResponse:
        parts: list[str] = []
        response = ModelResponse()
        async for chunk in self._model_client.stream_invoke(
            prompt, model=self._model, system_prompt=system_prompt, tools=tools
        ):
            if chunk.content:
                parts.append(chunk.content)
                if self._delta_sink is not None:
                    self._delta_sink(kind, chunk.content)
            if chunk.done:
                response.tool_calls = list(chunk.tool_calls)
                response.usage = chunk.usage
        response.content = "".join(parts)
        return response

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        if self._signal is None:
            return await awaitable
        return await self._signal.guard(awaitable)

    def _check_signal(self) -> None:
        if self._signal is not None:
            self._signal.raise_if_aborted()

    def _done(self, ctx: RunContext, answer: str) -> Done:
        elapsed = ctx.elapsed_ms()
        done = Done(
            answer=answer,
            tool_calls=ctx.scratchpad.get_tool_call_records(),
            iterations=ctx.iteration,
            total_time_ms=elapsed,
            token_usage=ctx.usage.usage,
            tokens_per_second=ctx.usage.tokens_per_second(elapsed),
        )
        logger.info(
            "run_done",
            iterations=done.iterations,
            tool_calls=len(done.tool_calls),
            total_time_ms=elapsed,
            answer_chars=len(answer),
        )
        return done
