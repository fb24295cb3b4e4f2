import logging
import math
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from enum import Enum
from types import TracebackType
from typing import Any, Protocol, TypeVar

import anyio
import anyio.lowlevel
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import BaseModel, ValidationError
from typing_extensions import Self

from mcp_runtime.shared.capabilities import CapabilityRegistry, SessionRole
from mcp_runtime.shared.codec import notification_message, request_message, response_message
from mcp_runtime.shared.context import RequestContext
from mcp_runtime.shared.exceptions import (
    McpError,
    NotInitialized,
    ProtocolViolation,
    SessionClosing,
    TransportFailure,
    error_from_data,
)
from mcp_runtime.shared.message import MessageMetadata, ServerMessageMetadata, SessionMessage
from mcp_runtime.shared.pending import PendingCall, PendingCallTable
from mcp_runtime.types import (
    CONNECTION_CLOSED,
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    REQUEST_CANCELLED,
    REQUEST_TIMEOUT,
    CancelledNotification,
    CancelledNotificationParams,
    ErrorData,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ProgressNotification,
    ProgressNotificationParams,
    RequestId,
    RequestParams,
)

logger = logging.getLogger(__name__)

ReceiveResultT = TypeVar("ReceiveResultT", bound=BaseModel)


class SessionPhase(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    OPERATIONAL = "operational"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


_PHASE_TRANSITIONS: dict[SessionPhase, frozenset[SessionPhase]] = {
    SessionPhase.UNINITIALIZED: frozenset({SessionPhase.INITIALIZING, SessionPhase.SHUTTING_DOWN}),
    SessionPhase.INITIALIZING: frozenset({SessionPhase.OPERATIONAL, SessionPhase.SHUTTING_DOWN}),
    SessionPhase.OPERATIONAL: frozenset({SessionPhase.SHUTTING_DOWN}),
    SessionPhase.SHUTTING_DOWN: frozenset({SessionPhase.CLOSED}),
    SessionPhase.CLOSED: frozenset(),
}

# Traffic that stays legal while the handshake is in progress.
_HANDSHAKE_METHODS = frozenset(
    {
        "ping",
        "notifications/cancelled",
        "notifications/progress",
        "notifications/message",
    }
)


class ProgressFnT(Protocol):
    """Protocol for progress notification callbacks."""

    async def __call__(self, progress: float, total: float | None, message: str | None) -> None: ...


RequestHandlerFnT = Callable[[RequestContext[Any, Any, Any], Any], Awaitable[BaseModel | ErrorData]]
"""A request handler receives the request context and the validated params."""

NotificationHandlerFnT = Callable[[Any], Awaitable[None]]
CloseCallbackFnT = Callable[["BaseSession"], None]


class RequestResponder:
    """Handles responding to one inbound request and manages its lifecycle.

    This class MUST be used as a context manager to ensure proper cleanup and
    cancellation handling:

    Example:
        with request_responder as resp:
            await resp.respond(result)

    The context manager ensures:
    1. Proper cancellation scope setup and cleanup
    2. Request completion tracking
    3. Cleanup of in-flight requests
    """

    def __init__(
        self,
        request_id: RequestId,
        request_meta: RequestParams.Meta | None,
        request: BaseModel,
        session: "BaseSession",
        on_complete: Callable[["RequestResponder"], Any],
        message_metadata: MessageMetadata = None,
    ) -> None:
        self.request_id = request_id
        self.request_meta = request_meta
        self.request = request
        self.message_metadata = message_metadata
        self._session = session
        self._completed = False
        self._cancel_scope = anyio.CancelScope()
        self._on_complete = on_complete
        self._entered = False

    @property
    def method(self) -> str:
        return getattr(self.request, "method")

    def __enter__(self) -> "RequestResponder":
        """Enter the context manager, enabling request cancellation tracking."""
        self._entered = True
        self._cancel_scope = anyio.CancelScope()
        self._cancel_scope.__enter__()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        """Exit the context manager, performing cleanup and notifying completion."""
        try:
            self._on_complete(self)
        finally:
            self._entered = False
        return self._cancel_scope.__exit__(exc_type, exc_val, exc_tb)

    async def respond(self, response: BaseModel | ErrorData) -> None:
        """Send the single response for this request.

        Must be called within a context manager block.
        Raises:
            RuntimeError: If not used within a context manager
            AssertionError: If request was already responded to
        """
        if not self._entered:
            raise RuntimeError("RequestResponder must be used as a context manager")
        assert not self._completed, "Request already responded to"

        if not self.cancelled:
            self._completed = True
            await self._session._send_response(request_id=self.request_id, response=response)  # type: ignore[reportPrivateUsage]

    async def cancel(self, reason: str | None = None) -> None:
        """Cancel this request and mark it as completed."""
        if self._completed:
            return
        self._cancel_scope.cancel()
        self._completed = True
        await self._session._send_response(  # type: ignore[reportPrivateUsage]
            request_id=self.request_id,
            response=ErrorData(code=REQUEST_CANCELLED, message=reason or "Request cancelled"),
        )

    def abandon(self) -> None:
        """Stop the handler without responding; used when the session shuts down."""
        self._completed = True
        self._cancel_scope.cancel()

    @property
    def in_flight(self) -> bool:
        return not self._completed and not self.cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancel_scope.cancel_called


class BaseSession:
    """
    Implements a protocol session on top of read/write streams: the lifecycle
    state machine, request/response correlation, notifications, progress and
    capability enforcement shared by the client and server roles.

    This class is an async context manager that automatically starts processing
    messages when entered. Inbound messages are read one at a time; request
    handlers run as separate tasks, so a slow handler never blocks the reading
    of the next message, and notification handlers run in arrival order on a
    dedicated worker.
    """

    _in_flight: dict[RequestId, RequestResponder]

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        *,
        role: SessionRole,
        local_capabilities: BaseModel | Mapping[str, Any],
        receive_request_types: Mapping[str, type[BaseModel]],
        receive_notification_types: Mapping[str, type[BaseModel]],
        # If none, reading will never time out
        read_timeout_seconds: timedelta | None = None,
        session_id: str | None = None,
    ) -> None:
        self._read_stream = read_stream
        self._write_stream = write_stream
        self._receive_request_types = receive_request_types
        self._receive_notification_types = receive_notification_types
        self._session_read_timeout_seconds = read_timeout_seconds
        self._session_id = session_id
        self._phase = SessionPhase.UNINITIALIZED
        self._capabilities = CapabilityRegistry(role)
        self._capabilities.declare(local_capabilities)
        self._pending = PendingCallTable()
        self._progress_callbacks: dict[RequestId, ProgressFnT] = {}
        self._in_flight = {}
        self._request_handlers: dict[str, RequestHandlerFnT] = {}
        self._notification_handlers: dict[str, NotificationHandlerFnT] = {}
        self._close_callbacks: list[CloseCallbackFnT] = []
        self._closed = anyio.Event()
        self._task_group: TaskGroup | None = None
        self._receive_scope = anyio.CancelScope()
        self._handler_task_group: TaskGroup | None = None
        self._notification_writer, self._notification_reader = anyio.create_memory_object_stream[BaseModel](math.inf)

    async def __aenter__(self) -> Self:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self._task_group.start_soon(self._receive_loop)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        self._begin_shutdown("session exited")
        assert self._task_group is not None
        # Using the session as a context manager should not block on exit, so
        # make sure to cancel the tasks in the task group.
        self._task_group.cancel_scope.cancel()
        try:
            return await self._task_group.__aexit__(exc_type, exc_val, exc_tb)
        finally:
            self._mark_closed()

    @property
    def role(self) -> SessionRole:
        return self._capabilities.role

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def capabilities(self) -> CapabilityRegistry:
        return self._capabilities

    @property
    def is_operational(self) -> bool:
        return self._phase is SessionPhase.OPERATIONAL

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def add_close_callback(self, callback: CloseCallbackFnT) -> None:
        """Register a callback run synchronously when the session starts shutting down."""
        if self._phase in (SessionPhase.SHUTTING_DOWN, SessionPhase.CLOSED):
            callback(self)
        else:
            self._close_callbacks.append(callback)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def aclose(self) -> None:
        """Shut the session down; pending calls fail with SessionClosing."""
        self._begin_shutdown("closed locally")
        self._receive_scope.cancel()
        if self._task_group is not None:
            await self._closed.wait()
        else:
            await anyio.lowlevel.checkpoint()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, phase: SessionPhase) -> None:
        if phase is self._phase:
            return
        if phase not in _PHASE_TRANSITIONS[self._phase]:
            raise RuntimeError(f"Illegal session transition {self._phase.name} -> {phase.name}")
        logger.debug("Session %s: %s -> %s", self._session_id, self._phase.name, phase.name)
        self._phase = phase

    def _begin_shutdown(self, reason: str) -> None:
        if self._phase in (SessionPhase.SHUTTING_DOWN, SessionPhase.CLOSED):
            return
        self._transition(SessionPhase.SHUTTING_DOWN)
        logger.info("Session %s shutting down: %s", self._session_id, reason)

        self._pending.fail_all(ErrorData(code=CONNECTION_CLOSED, message=f"Session closing: {reason}"))
        self._progress_callbacks.clear()
        for responder in list(self._in_flight.values()):
            responder.abandon()

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Close callback failed for session %s", self._session_id)

    def _mark_closed(self) -> None:
        if self._phase is SessionPhase.CLOSED:
            return
        if self._phase is not SessionPhase.SHUTTING_DOWN:
            self._begin_shutdown("session closed")
        self._transition(SessionPhase.CLOSED)
        self._closed.set()

    def _check_outgoing(self, method: str) -> None:
        """Fail closed if `method` may not be sent in the current phase."""
        match self._phase:
            case SessionPhase.UNINITIALIZED:
                if method == "initialize" and self.role == "client":
                    return
                raise NotInitialized(f"Cannot send {method!r}: session is not initialized")
            case SessionPhase.INITIALIZING:
                if method in _HANDSHAKE_METHODS:
                    return
                if method == "notifications/initialized" and self.role == "client":
                    return
                raise NotInitialized(f"Cannot send {method!r}: initialization is not complete")
            case SessionPhase.OPERATIONAL:
                if method in ("initialize", "notifications/initialized"):
                    raise ProtocolViolation(f"Cannot send {method!r}: session is already initialized")
                self._capabilities.check(method)
            case _:
                raise SessionClosing(f"Cannot send {method!r}: session is {self._phase.value}")

    def _check_incoming(self, method: str, *, is_request: bool) -> None:
        """Raise if an inbound `method` is illegal for the phase or capability sets."""
        match self._phase:
            case SessionPhase.UNINITIALIZED:
                if is_request and method == "initialize" and self.role == "server":
                    return
                raise ProtocolViolation(f"Received {method!r} before initialization")
            case SessionPhase.INITIALIZING:
                if method == "initialize":
                    raise ProtocolViolation("Received a second initialize request")
                if method in _HANDSHAKE_METHODS:
                    return
                if method == "notifications/initialized" and self.role == "server":
                    return
                raise NotInitialized(f"Received {method!r} before initialization was complete")
            case SessionPhase.OPERATIONAL:
                if method in ("initialize", "notifications/initialized"):
                    raise ProtocolViolation(f"Received {method!r} after initialization")
                self._capabilities.check(method)
            case _:
                raise SessionClosing(f"Received {method!r} while session is {self._phase.value}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def start_request(
        self,
        request: BaseModel,
        metadata: MessageMetadata = None,
        progress_callback: ProgressFnT | None = None,
    ) -> PendingCall:
        """
        Starts a request and returns its pending call without waiting.

        Do not use this method to emit notifications! Use send_notification()
        instead.
        """
        method: str = getattr(request, "method")
        self._check_outgoing(method)

        call = self._pending.open(method)
        progress_token = None
        if progress_callback is not None:
            # Use the request id as progress token
            progress_token = call.request_id
            self._progress_callbacks[call.request_id] = progress_callback

        message = request_message(call.request_id, request, progress_token=progress_token)
        try:
            await self._write_stream.send(SessionMessage(message=message, metadata=metadata))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            self._forget(call)
            raise TransportFailure(f"Cannot send {method!r}: transport is closed") from exc
        return call

    async def join_request(
        self,
        call: PendingCall,
        result_type: type[ReceiveResultT],
        request_read_timeout_seconds: timedelta | None = None,
    ) -> ReceiveResultT:
        """
        Waits for a request previously started via start_request.

        Raises the McpError subclass matching the failure: RequestTimeout when the
        deadline passes, RequestCancelled after cancellation, SessionClosing when
        the session shuts down, or whatever error the peer answered with.
        """
        # request read timeout takes precedence over session read timeout
        timeout = None
        if request_read_timeout_seconds is not None:
            timeout = request_read_timeout_seconds.total_seconds()
        elif self._session_read_timeout_seconds is not None:
            timeout = self._session_read_timeout_seconds.total_seconds()

        try:
            with anyio.fail_after(timeout):
                outcome = await call.wait()
        except TimeoutError:
            timed_out = call.fail(
                ErrorData(
                    code=REQUEST_TIMEOUT,
                    message=f"Timed out while waiting for response to {call.method!r}. Waited {timeout} seconds.",
                )
            )
            if timed_out:
                await self._notify_cancelled(call.request_id, "timed out")
            outcome = call.outcome()
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await self.cancel_request(call.request_id, "caller cancelled")
            raise
        finally:
            self._forget(call)

        if isinstance(outcome, ErrorData):
            raise error_from_data(outcome)
        return result_type.model_validate(outcome)

    async def send_request(
        self,
        request: BaseModel,
        result_type: type[ReceiveResultT],
        request_read_timeout_seconds: timedelta | None = None,
        metadata: MessageMetadata = None,
        progress_callback: ProgressFnT | None = None,
    ) -> ReceiveResultT:
        """
        Sends a request and wait for a response. Raises an McpError if the
        response contains an error. If a request read timeout is provided, it
        will take precedence over the session read timeout.

        Do not use this method to emit notifications! Use send_notification()
        instead.
        """
        call = await self.start_request(request, metadata, progress_callback)
        return await self.join_request(call, result_type, request_read_timeout_seconds)

    async def cancel_request(self, request_id: RequestId, reason: str | None = None) -> bool:
        """
        Cancels a request previously started via start_request.

        The local pending call resolves immediately with a cancellation failure; the
        peer is told on a best-effort basis.
        """
        call = self._pending.get(request_id)
        if call is None or not call.cancel(reason):
            return False
        self._forget(call)
        await self._notify_cancelled(call.request_id, reason)
        return True

    async def send_notification(
        self,
        notification: BaseModel,
        related_request_id: RequestId | None = None,
    ) -> None:
        """
        Emits a notification, which is a one-way message that does not expect
        a response.
        """
        method: str = getattr(notification, "method")
        self._check_outgoing(method)
        # Some transport implementations may need to set the related_request_id
        # to attribute to the notifications to the request that triggered them.
        session_message = SessionMessage(
            message=notification_message(notification),
            metadata=ServerMessageMetadata(related_request_id=related_request_id)
            if related_request_id is not None
            else None,
        )
        try:
            await self._write_stream.send(session_message)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            raise TransportFailure(f"Cannot send {method!r}: transport is closed") from exc

    async def send_progress_notification(
        self,
        progress_token: str | int,
        progress: float,
        total: float | None = None,
        message: str | None = None,
        related_request_id: RequestId | None = None,
    ) -> None:
        """
        Sends a progress notification for a request that is currently being
        processed.
        """
        await self.send_notification(
            ProgressNotification(
                params=ProgressNotificationParams(
                    progressToken=progress_token,
                    progress=progress,
                    total=total,
                    message=message,
                ),
            ),
            related_request_id,
        )

    async def _notify_cancelled(self, request_id: RequestId, reason: str | None) -> None:
        try:
            await self.send_notification(
                CancelledNotification(params=CancelledNotificationParams(requestId=request_id, reason=reason))
            )
        except McpError as exc:
            logger.debug("Could not deliver cancellation for request %r: %s", request_id, exc)

    async def _send_response(self, request_id: RequestId, response: BaseModel | ErrorData) -> None:
        try:
            await self._write_stream.send(SessionMessage(message=response_message(request_id, response)))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Dropping response to request %r: transport is closed", request_id)

    def _forget(self, call: PendingCall) -> None:
        self._pending.discard(call.request_id)
        self._progress_callbacks.pop(call.request_id, None)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        reason = "transport closed"
        try:
            with self._receive_scope:
                async with anyio.create_task_group() as tg:
                    self._handler_task_group = tg
                    tg.start_soon(self._notification_worker)
                    try:
                        async for message in self._read_stream:
                            if isinstance(message, TransportFailure):
                                reason = f"transport failure: {message}"
                                break
                            if isinstance(message, Exception):
                                await self._handle_stream_exception(message)
                                continue
                            await self._dispatch(message)
                    except (anyio.ClosedResourceError, anyio.EndOfStream):
                        # The peer went away abruptly; treat it like a closed transport
                        logger.debug("Read stream closed")
                    except Exception as exc:
                        reason = f"unrecoverable error: {exc}"
                        logger.exception("Unhandled exception in receive loop")
                    finally:
                        self._begin_shutdown(reason)
                        tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await self._notification_writer.aclose()
                await self._read_stream.aclose()
                await self._write_stream.aclose()
            self._mark_closed()

    async def _dispatch(self, message: SessionMessage) -> None:
        root = message.message.root
        if isinstance(root, JSONRPCRequest):
            await self._dispatch_request(root, message.metadata)
        elif isinstance(root, JSONRPCNotification):
            await self._dispatch_notification(root)
        else:
            self._dispatch_response(root)

    async def _dispatch_request(self, root: JSONRPCRequest, metadata: MessageMetadata) -> None:
        try:
            self._check_incoming(root.method, is_request=True)
            request = self._validate(root, self._receive_request_types)
            handler = self._request_handlers.get(root.method)
            if handler is None:
                raise McpError(ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {root.method}"))
        except McpError as err:
            logger.warning("Rejecting request %r (id %r): %s", root.method, root.id, err.error.message)
            await self._send_response(root.id, err.error)
            return

        params = getattr(request, "params", None)
        responder = RequestResponder(
            request_id=root.id,
            request_meta=params.meta if isinstance(params, RequestParams) else None,
            request=request,
            session=self,
            on_complete=lambda r: self._in_flight.pop(r.request_id, None),
            message_metadata=metadata,
        )
        self._in_flight[responder.request_id] = responder

        if root.method == "initialize":
            # The handshake must finish before the next message is looked at
            await self._run_handler(responder, handler)
        else:
            assert self._handler_task_group is not None
            self._handler_task_group.start_soon(self._run_handler, responder, handler)

    async def _run_handler(self, responder: RequestResponder, handler: RequestHandlerFnT) -> None:
        ctx = self._make_context(responder)
        with responder:
            try:
                response = await handler(ctx, getattr(responder.request, "params", None))
            except McpError as err:
                response = err.error
            except Exception as err:
                logger.exception("Handler for %r raised", responder.method)
                response = ErrorData(code=INTERNAL_ERROR, message=str(err))
            await responder.respond(response)

    def _make_context(self, responder: RequestResponder) -> RequestContext[Any, Any, Any]:
        request_data = None
        if isinstance(responder.message_metadata, ServerMessageMetadata):
            request_data = responder.message_metadata.request_context
        return RequestContext(
            request_id=responder.request_id,
            meta=responder.request_meta,
            session=self,
            lifespan_context=None,
            request=request_data,
        )

    async def _dispatch_notification(self, root: JSONRPCNotification) -> None:
        try:
            self._check_incoming(root.method, is_request=False)
            notification = self._validate(root, self._receive_notification_types)
        except McpError as err:
            # Notifications never get a reply, even when they are rejected
            logger.warning("Discarding notification %r: %s", root.method, err.error.message)
            return

        if isinstance(notification, CancelledNotification):
            responder = self._in_flight.get(notification.params.requestId)
            if responder is not None:
                await responder.cancel(notification.params.reason)
            return

        try:
            await self._received_notification(notification)
        except McpError as err:
            logger.warning("Rejected notification %r: %s", root.method, err.error.message)
            return

        if isinstance(notification, ProgressNotification):
            # Inline, so progress always lands before the response it precedes
            await self._route_progress(notification.params)
        await self._notification_writer.send(notification)

    def _dispatch_response(self, root: JSONRPCResponse | JSONRPCError) -> None:
        if not self._pending.resolve_response(root):
            logger.warning("Discarding response for unknown or already resolved request id %r", root.id)

    def _validate(self, root: JSONRPCRequest | JSONRPCNotification, types: Mapping[str, type[BaseModel]]) -> BaseModel:
        message_type = types.get(root.method)
        if message_type is None:
            raise McpError(ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {root.method}"))
        try:
            return message_type.model_validate(
                root.model_dump(by_alias=True, mode="json", exclude_none=True, exclude={"jsonrpc", "id"})
            )
        except ValidationError as exc:
            raise McpError(ErrorData(code=INVALID_PARAMS, message="Invalid request parameters", data=str(exc)))

    async def _notification_worker(self) -> None:
        async with self._notification_reader:
            async for notification in self._notification_reader:
                method = getattr(notification, "method")
                try:
                    handler = self._notification_handlers.get(method)
                    if handler is not None:
                        await handler(notification)
                except Exception:
                    # A failing notification handler never affects protocol state
                    logger.exception("Notification handler for %r failed", method)

    async def _route_progress(self, params: ProgressNotificationParams) -> None:
        callback = self._progress_callbacks.get(params.progressToken)
        if callback is None:
            return
        try:
            await callback(params.progress, params.total, params.message)
        except Exception:
            logger.exception("Progress callback for %r failed", params.progressToken)

    async def _received_notification(self, notification: BaseModel) -> None:
        """
        Can be overridden by subclasses to act on a notification before it is
        queued for the notification handlers; runs inline in the receive loop.
        """

    async def _handle_stream_exception(self, exc: Exception) -> None:
        """Called for unparsable frames; the session stays up."""
        logger.warning("Received malformed message: %s", exc)
        if isinstance(exc, ProtocolViolation) and exc.request_id is not None:
            await self._send_response(exc.request_id, exc.error)
