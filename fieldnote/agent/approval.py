"""Tool approval gate: single-outstanding-request user confirmation.

States: idle → pending → resolved → idle. At most one request may be
pending; a second request while one is outstanding raises ApprovalError.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from fieldnote.infra.errors import ApprovalError

logger = structlog.get_logger()


class ApprovalDecision(StrEnum):
    allow_once = "allow-once"
    allow_session = "allow-session"
    deny = "deny"


@dataclass(frozen=True)
class ApprovalRequest:
    tool: str
    args: dict[str, Any] = field(default_factory=dict)


ApprovalCallback = Callable[[ApprovalRequest], Awaitable[ApprovalDecision]]


async def auto_approve(request: ApprovalRequest) -> ApprovalDecision:
    """Non-interactive policy: allow every call once."""
    return ApprovalDecision.allow_once


async def auto_deny(request: ApprovalRequest) -> ApprovalDecision:
    """Non-interactive policy: deny every call that needs approval."""
    return ApprovalDecision.deny


class ApprovalGate:
    """One-shot future per request, guarded by a pending flag.

    on_pending is invoked synchronously when a request becomes pending so a
    UI can prompt the user; the UI answers through resolve().
    """

    def __init__(
        self, on_pending: Callable[[ApprovalRequest], None] | None = None
    ) -> None:
        self._on_pending = on_pending
        self._future: asyncio.Future[ApprovalDecision] | None = None
        self._pending: ApprovalRequest | None = None

    @property
    def pending(self) -> ApprovalRequest | None:
        return self._pending

    async def request(self, tool: str, args: dict[str, Any] | None = None) -> ApprovalDecision:
        """Wait for the decision on *tool*. Raises ApprovalError if one is already pending."""
        if self._future is not None:
            raise ApprovalError(
                f"Approval already pending for tool '{self._pending.tool}'"
                if self._pending
                else "Approval already pending",
                code="APPROVAL_PENDING",
            )
        request = ApprovalRequest(tool=tool, args=dict(args or {}))
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._pending = request
        logger.info("approval_requested", tool=request.tool)
        if self._on_pending is not None:
            self._on_pending(request)
        try:
            return await self._future
        finally:
            self._future = None
            self._pending = None

    def resolve(self, decision: ApprovalDecision) -> bool:
        """Resolve the pending request. Returns False when nothing is pending."""
        if self._future is None or self._future.done():
            return False
        logger.info(
            "approval_resolved",
            tool=self._pending.tool if self._pending else None,
            decision=decision.value,
        )
        self._future.set_result(decision)
        return True

    def cancel(self) -> None:
        """Resolve any pending request as deny."""
        self.resolve(ApprovalDecision.deny)

    async def ask(self, request: ApprovalRequest) -> ApprovalDecision:
        """ApprovalCallback adapter: route an executor request through the gate."""
        return await self.request(request.tool, request.args)
