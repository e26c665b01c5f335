"""Tests for RunSignal."""

from __future__ import annotations

import asyncio

import pytest

from fieldnote.agent.cancellation import RunSignal
from fieldnote.infra.errors import RunCancelledError


class TestRunSignal:
    def test_raise_if_aborted(self):
        signal = RunSignal()
        signal.raise_if_aborted()
        signal.abort()
        assert signal.aborted is True
        with pytest.raises(RunCancelledError):
            signal.raise_if_aborted()

    def test_abort_runs_callbacks_once(self):
        calls: list[str] = []
        signal = RunSignal()
        signal.on_abort(lambda: calls.append("a"))
        signal.abort()
        signal.abort()
        assert calls == ["a"]

    def test_callback_after_abort_runs_immediately(self):
        calls: list[str] = []
        signal = RunSignal()
        signal.abort()
        signal.on_abort(lambda: calls.append("late"))
        assert calls == ["late"]

    @pytest.mark.asyncio()
    async def test_guard_returns_result(self):
        signal = RunSignal()

        async def work():
            return 42

        assert await signal.guard(work()) == 42

    @pytest.mark.asyncio()
    async def test_guard_cancels_in_flight_work(self):
        signal = RunSignal()
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async def abort_soon():
            await started.wait()
            signal.abort()

        aborter = asyncio.create_task(abort_soon())
        with pytest.raises(RunCancelledError):
            await signal.guard(slow())
        await aborter
        assert cancelled.is_set()

    @pytest.mark.asyncio()
    async def test_guard_propagates_errors(self):
        signal = RunSignal()

        async def broken():
            raise ValueError("nope")

        with pytest.raises(ValueError, match="nope"):
            await signal.guard(broken())

    @pytest.mark.asyncio()
    async def test_guard_refuses_when_already_aborted(self):
        signal = RunSignal()
        signal.abort()

        async def work():
            return 1

        coro = work()
        with pytest.raises(RunCancelledError):
            await signal.guard(coro)
        coro.close()
