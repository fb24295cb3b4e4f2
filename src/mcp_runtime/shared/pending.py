"""
Pending call bookkeeping.

A PendingCall is the local record of one outstanding request. It is resolved
exactly once: by the matching response or error, by a local timeout, by
cancellation, or by session shutdown. Any later attempt to resolve it is
ignored and reported to the caller through the boolean return value.
"""

import logging
import time
from typing import Any

import anyio

from mcp_runtime.types import (
    REQUEST_CANCELLED,
    ErrorData,
    JSONRPCError,
    JSONRPCResponse,
    RequestId,
)

logger = logging.getLogger(__name__)


class PendingCall:
    """One in-flight request awaiting its single terminal response."""

    def __init__(self, request_id: RequestId, method: str) -> None:
        self.request_id = request_id
        self.method = method
        self.created_at = time.monotonic()
        self.cancelled = False
        self._done = anyio.Event()
        self._result: dict[str, Any] | None = None
        self._error: ErrorData | None = None

    @property
    def resolved(self) -> bool:
        return self._done.is_set()

    @property
    def error(self) -> ErrorData | None:
        return self._error

    def resolve(self, result: dict[str, Any]) -> bool:
        if self.resolved:
            return False
        self._result = result
        self._done.set()
        return True

    def fail(self, error: ErrorData) -> bool:
        if self.resolved:
            return False
        self._error = error
        self._done.set()
        return True

    def cancel(self, reason: str | None = None) -> bool:
        """Resolve locally with a cancellation failure. Returns False if already resolved."""
        if self.resolved:
            return False
        self.cancelled = True
        return self.fail(ErrorData(code=REQUEST_CANCELLED, message=reason or "Request cancelled"))

    def outcome(self) -> dict[str, Any] | ErrorData:
        if not self.resolved:
            raise RuntimeError(f"Pending call {self.request_id!r} is not resolved yet")
        if self._error is not None:
            return self._error
        assert self._result is not None
        return self._result

    async def wait(self) -> dict[str, Any] | ErrorData:
        await self._done.wait()
        return self.outcome()

    def __repr__(self) -> str:
        state = "resolved" if self.resolved else "pending"
        return f"PendingCall(id={self.request_id!r}, method={self.method!r}, {state})"


class PendingCallTable:
    """Correlation table for the requests one side of a session has initiated.

    Ids come from a monotonically increasing counter, so they are unique among
    outstanding calls for the life of the table.
    """

    def __init__(self) -> None:
        self._next_id = 0
        self._calls: dict[RequestId, PendingCall] = {}

    def open(self, method: str) -> PendingCall:
        request_id = self._next_id
        self._next_id = request_id + 1
        call = PendingCall(request_id, method)
        self._calls[request_id] = call
        return call

    def get(self, request_id: RequestId) -> PendingCall | None:
        call = self._calls.get(request_id)
        if call is None and isinstance(request_id, str):
            # Some peers echo integer ids back as strings
            try:
                call = self._calls.get(int(request_id))
            except ValueError:
                call = None
        return call

    def discard(self, request_id: RequestId) -> None:
        self._calls.pop(request_id, None)

    def resolve_response(self, message: JSONRPCResponse | JSONRPCError) -> bool:
        """Resolve the call matching a received response.

        Returns False when no unresolved call matches, which covers both unknown
        ids and duplicate responses for an id that was already resolved.
        """
        call = self.get(message.id)
        if call is None:
            return False
        if isinstance(message, JSONRPCError):
            resolved = call.fail(message.error)
        else:
            resolved = call.resolve(message.result)
        if resolved:
            self.discard(call.request_id)
        return resolved

    def fail_all(self, error: ErrorData) -> int:
        """Fail every outstanding call; returns how many were still unresolved."""
        failed = 0
        for call in list(self._calls.values()):
            if call.fail(error):
                failed += 1
        self._calls.clear()
        if failed:
            logger.debug("Failed %d pending calls: %s", failed, error.message)
        return failed

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._calls

    def __len__(self) -> int:
        return len(self._calls)
