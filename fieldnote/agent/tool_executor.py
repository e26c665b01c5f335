from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from fieldnote.agent.approval import ApprovalCallback, ApprovalDecision, ApprovalRequest
from fieldnote.agent.events import (
    AgentEvent,
    ToolApproval,
    ToolDenied,
    ToolEnd,
    ToolFailed,
    ToolLimit,
    ToolProgress,
    ToolStart,
)
from fieldnote.infra.errors import RunCancelledError, ToolError
from fieldnote.tools.context import ToolContext

if TYPE_CHECKING:
    from fieldnote.agent.cancellation import RunSignal
    from fieldnote.agent.model_client import ToolCallRequest
    from fieldnote.agent.run_context import RunContext
    from fieldnote.tools.base import BaseTool
    from fieldnote.tools.registry import ToolRegistry

logger = structlog.get_logger()


class ToolExecutor:
    """Executes one batch of model-requested tool calls, strictly in order.

    Per call: tool_start, then exactly one of tool_end / tool_error /
    tool_denied, with optional tool_approval, tool_limit and tool_progress
    in between. A denial stops the batch; a failure does not.

    session_approved_tools is owned by the caller (outlives the run) and is
    mutated in place on allow-session.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        request_approval: ApprovalCallback | None = None,
        session_approved_tools: set[str] | None = None,
        signal: RunSignal | None = None,
        session_id: str = "main",
    ) -> None:
        self._registry = registry
        self._request_approval = request_approval
        self._session_approved = (
            session_approved_tools if session_approved_tools is not None else set()
        )
        self._signal = signal
        self._session_id = session_id

    async def execute_all(
        self, tool_calls: Sequence[ToolCallRequest], ctx: RunContext
    ) -> AsyncIterator[AgentEvent]:
        for call in tool_calls:
            if self._signal is not None:
                self._signal.raise_if_aborted()

            name, args = call.name, call.arguments
            yield ToolStart(tool=name, args=args)

            tool = self._registry.get(name)
            if tool is None:
                logger.warning("unknown_tool", tool_name=name)
                yield self._fail(ctx, name, args, f"Unknown tool: {name}")
                continue

            if tool.requires_approval and name not in self._session_approved:
                decision = await self._approve(name, args)
                yield ToolApproval(tool=name, args=args, approved=decision)
                if decision == ApprovalDecision.deny:
                    logger.info("tool_denied", tool_name=name, session_id=self._session_id)
                    yield ToolDenied(tool=name, args=args)
                    return
                if decision == ApprovalDecision.allow_session:
                    self._session_approved.add(name)

            hint = tool.query_hint(args)
            limit = tool.max_calls_per_query
            warning = ctx.scratchpad.can_call_tool(name, hint, limit=limit)
            if warning:
                logger.info("tool_limit_warning", tool_name=name, warning=warning)
                yield ToolLimit(tool=name, warning=warning)

            try:
                validated = self._registry.validate_args(name, args)
            except ToolError as e:
                logger.warning("tool_args_invalid", tool_name=name, error=str(e))
                yield self._fail(ctx, name, args, str(e))
                continue

            ctx.scratchpad.record_tool_call(name, hint, limit=limit)
            started = time.monotonic()
            progress: asyncio.Queue[str] = asyncio.Queue()
            context = ToolContext(
                session_id=self._session_id,
                query=ctx.query,
                progress=progress.put_nowait,
            )
            task = asyncio.ensure_future(self._invoke(tool, validated, context))
            try:
                async for message in _drain_progress(task, progress):
                    yield ToolProgress(tool=name, message=message)
                result = task.result()
            except RunCancelledError:
                raise
            except Exception as e:
                logger.exception("tool_execution_failed", tool_name=name)
                yield self._fail(ctx, name, args, str(e) or type(e).__name__)
                continue
            finally:
                if not task.done():
                    task.cancel()

            duration_ms = int((time.monotonic() - started) * 1000)
            ctx.scratchpad.add_tool_result(name, args, result)
            record = ctx.scratchpad.get_tool_call_records()[-1]
            logger.info("tool_executed", tool_name=name, duration_ms=duration_ms)
            yield ToolEnd(tool=name, args=args, result=record.result, duration_ms=duration_ms)

    async def _approve(self, name: str, args: dict[str, Any]) -> ApprovalDecision:
        # Fail-closed: a tool needing approval with nobody to ask is denied.
        if self._request_approval is None:
            return ApprovalDecision.deny
        return await self._request_approval(ApprovalRequest(tool=name, args=args))

    async def _invoke(
        self, tool: BaseTool, arguments: dict[str, Any], context: ToolContext
    ) -> dict | str:
        if self._signal is not None:
            return await self._signal.guard(tool.execute(arguments, context))
        return await tool.execute(arguments, context)

    @staticmethod
    def _fail(ctx: RunContext, name: str, args: dict[str, Any], error: str) -> ToolFailed:
        ctx.scratchpad.add_tool_result(name, args, f"Error: {error}")
        return ToolFailed(tool=name, error=error)


async def _drain_progress(
    task: asyncio.Future[Any], queue: asyncio.Queue[str]
) -> AsyncIterator[str]:
    """Yield progress messages while *task* runs, then whatever is left queued."""
    while not task.done():
        getter = asyncio.ensure_future(queue.get())
        done, _ = await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
        if getter in done:
            yield getter.result()
        else:
            getter.cancel()
    while not queue.empty():
        yield queue.get_nowait()
