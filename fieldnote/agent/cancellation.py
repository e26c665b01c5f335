from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from fieldnote.infra.errors import RunCancelledError

logger = structlog.get_logger()

T = TypeVar("T")


class RunSignal:
    """Cancellation signal scoped to a single run.

    Checked before each tool invocation and raced against in-flight model and
    tool calls via guard(). abort() is idempotent.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def on_abort(self, callback: Callable[[], None]) -> None:
        """Register a callback run once on abort (immediately if already aborted)."""
        if self.aborted:
            callback()
            return
        self._callbacks.append(callback)

    def abort(self) -> None:
        if self.aborted:
            return
        self._event.set()
        logger.info("run_aborted")
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise RunCancelledError()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, cancelling it if the signal fires first."""
        self.raise_if_aborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise RunCancelledError()
