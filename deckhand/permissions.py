"""Operator approval for side-effecting tool calls."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from deckhand.exceptions import PermissionPendingError
from deckhand.logging import get_logger

log = get_logger(__name__)


class PermissionDecision(str, Enum):
    APPROVE_ONCE = "approve_once"
    DENY = "deny"
    APPROVE_SESSION = "approve_session"


_DECISION_KEYS = {
    "y": PermissionDecision.APPROVE_ONCE,
    "yes": PermissionDecision.APPROVE_ONCE,
    "n": PermissionDecision.DENY,
    "no": PermissionDecision.DENY,
    "a": PermissionDecision.APPROVE_SESSION,
    "always": PermissionDecision.APPROVE_SESSION,
}


def parse_decision(text: str) -> PermissionDecision | None:
    """Map an operator keypress (y/n/a) to a decision."""
    return _DECISION_KEYS.get(str(text or "").strip().lower())


@dataclass
class PermissionRequest:
    """The one outstanding approval request."""

    tool_name: str
    arguments: dict[str, Any]
    future: asyncio.Future[PermissionDecision] = field(repr=False)


RequestHandler = Callable[[PermissionRequest], Awaitable[None] | None]


class PermissionGate:
    """Suspends dangerous tool calls until the operator decides.

    The front end supplies ``on_request`` to learn about a new request and
    later calls ``resolve`` with the operator's answer. Session approvals live
    in memory only.
    """

    def __init__(
        self,
        dangerous_tools: list[str] | set[str] | None = None,
        on_request: RequestHandler | None = None,
    ):
        self.dangerous_tools: set[str] = set(dangerous_tools or [])
        self.on_request = on_request
        self.session_allowed: set[str] = set()
        self.pending: PermissionRequest | None = None

    def requires_approval(self, tool_name: str) -> bool:
        return tool_name in self.dangerous_tools and tool_name not in self.session_allowed

    async def check(self, tool_name: str, arguments: dict[str, Any] | None = None) -> bool:
        """Return True when the call may proceed; waits for the operator if needed."""
        if not self.requires_approval(tool_name):
            return True
        if self.pending is not None and not self.pending.future.done():
            raise PermissionPendingError(self.pending.tool_name, tool_name)

        loop = asyncio.get_running_loop()
        request = PermissionRequest(
            tool_name=tool_name,
            arguments=dict(arguments or {}),
            future=loop.create_future(),
        )
        self.pending = request
        log.info("Permission requested", tool=tool_name)
        try:
            if self.on_request is not None:
                try:
                    maybe_awaitable = self.on_request(request)
                    if asyncio.iscoroutine(maybe_awaitable):
                        await maybe_awaitable
                except Exception as e:
                    log.warning("Permission prompt failed, denying", tool=tool_name, error=str(e))
                    if not request.future.done():
                        request.future.set_result(PermissionDecision.DENY)
            decision = await request.future
        finally:
            if self.pending is request:
                self.pending = None

        if decision == PermissionDecision.APPROVE_SESSION:
            self.session_allowed.add(tool_name)
        log.info("Permission resolved", tool=tool_name, decision=decision.value)
        return decision != PermissionDecision.DENY

    def resolve(self, decision: PermissionDecision | str) -> bool:
        """Answer the pending request. Returns False when nothing was waiting."""
        if isinstance(decision, str) and not isinstance(decision, PermissionDecision):
            parsed = parse_decision(decision)
            if parsed is None:
                raise ValueError(f"Unknown permission decision: {decision!r}")
            decision = parsed
        request = self.pending
        if request is None or request.future.done():
            return False
        request.future.set_result(decision)
        return True
