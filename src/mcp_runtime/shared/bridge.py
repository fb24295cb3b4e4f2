"""
Bidirectional call bridge.

Server-initiated requests (sampling, elicitation, roots) travel over the same
correlation machinery as ordinary requests with the roles reversed. This
module holds the two ends of such an exchange:

* the answering side runs every bridged request through a `BridgePolicy`
  before it reaches the host callback and again before the result goes back,
  so the host can approve, refuse, or rewrite either direction;
* the originating side sends with an implicit deadline and an optional
  `RetryPolicy` that re-issues the request after a timeout.
"""

import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal, TypeVar

import anyio
from pydantic import BaseModel

from mcp_runtime.shared.context import RequestContext
from mcp_runtime.shared.exceptions import RequestTimeout
from mcp_runtime.shared.message import ServerMessageMetadata
from mcp_runtime.shared.session import BaseSession
from mcp_runtime.types import INVALID_REQUEST, ElicitResult, ErrorData, RequestId

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)

DEFAULT_BRIDGE_TIMEOUT = timedelta(seconds=60)


class BridgeRejection(Exception):
    """Raised by a BridgePolicy to refuse a bridged request."""

    def __init__(self, action: Literal["decline", "cancel"] = "decline", message: str | None = None):
        super().__init__(message or f"Request {action}d by host policy")
        self.action = action
        self.message = message or str(self)

    def to_response(self, method: str) -> BaseModel | ErrorData:
        # Elicitation has first-class decline/cancel results; other methods get an error
        if method == "elicitation/create":
            return ElicitResult(action=self.action)
        return ErrorData(code=INVALID_REQUEST, message=self.message)


class BridgePolicy:
    """Interception point for bridged requests on the answering side.

    Subclasses override either hook. `before_request` may return a modified
    request or raise BridgeRejection; `after_result` may rewrite the result
    before it is sent back to the originator.
    """

    async def before_request(self, context: RequestContext[Any, Any, Any], request: BaseModel) -> BaseModel:
        return request

    async def after_result(
        self,
        context: RequestContext[Any, Any, Any],
        request: BaseModel,
        result: BaseModel,
    ) -> BaseModel:
        return result


class PassthroughPolicy(BridgePolicy):
    """Forwards every bridged request and result unchanged."""


class CallbackPolicy(BridgePolicy):
    """Wraps a plain approval function, handy for confirmation prompts."""

    def __init__(self, approve: Callable[[BaseModel], Awaitable[bool]], action: Literal["decline", "cancel"] = "decline"):
        self._approve = approve
        self._action: Literal["decline", "cancel"] = action

    async def before_request(self, context: RequestContext[Any, Any, Any], request: BaseModel) -> BaseModel:
        if not await self._approve(request):
            raise BridgeRejection(self._action)
        return request


async def answer_bridged_request(
    policy: BridgePolicy,
    context: RequestContext[Any, Any, Any],
    request: BaseModel,
    callback: Callable[[RequestContext[Any, Any, Any], Any], Awaitable[BaseModel | ErrorData]],
) -> BaseModel | ErrorData:
    """Run one inbound bridged request through `policy` and the host `callback`."""
    method: str = getattr(request, "method")
    try:
        request = await policy.before_request(context, request)
    except BridgeRejection as rejection:
        logger.info("Host policy refused %r: %s", method, rejection.message)
        return rejection.to_response(method)

    result = await callback(context, getattr(request, "params", None))
    if isinstance(result, ErrorData):
        return result
    return await policy.after_result(context, request, result)


@dataclass(frozen=True)
class RetryPolicy:
    """How often a timed-out bridged request is re-issued.

    Only RequestTimeout failures are retried; every other failure is final.
    The default makes a single attempt.
    """

    max_attempts: int = 1
    backoff_seconds: float = 0.5
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0 or self.multiplier < 1:
            raise ValueError("backoff must be non-negative and must not shrink")

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry, i.e. max_attempts - 1 values."""
        delay = self.backoff_seconds
        for _ in range(self.max_attempts - 1):
            yield delay
            delay *= self.multiplier


async def send_bridged_request(
    session: BaseSession,
    request: BaseModel,
    result_type: type[ResultT],
    *,
    deadline: timedelta = DEFAULT_BRIDGE_TIMEOUT,
    retry: RetryPolicy | None = None,
    related_request_id: RequestId | None = None,
) -> ResultT:
    """Originate a bridged request, retrying on timeout per `retry`.

    Each attempt is a fresh request with its own id; a late response to an
    earlier attempt finds no pending call and is discarded.
    """
    retry = retry or RetryPolicy()
    method: str = getattr(request, "method")
    metadata = ServerMessageMetadata(related_request_id=related_request_id)
    delays = retry.delays()
    attempt = 1
    while True:
        try:
            return await session.send_request(
                request,
                result_type,
                request_read_timeout_seconds=deadline,
                metadata=metadata,
            )
        except RequestTimeout:
            delay = next(delays, None)
            if delay is None:
                raise
            logger.info(
                "Bridged %r timed out (attempt %d of %d); retrying in %.2fs",
                method,
                attempt,
                retry.max_attempts,
                delay,
            )
            await anyio.sleep(delay)
            attempt += 1
