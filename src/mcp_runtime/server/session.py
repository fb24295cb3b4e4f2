"""
ServerSession Module

This module provides the ServerSession class, the server-role end of a
session. It answers the initialize handshake, enforces the lifecycle and the
client's declared capabilities, and offers helpers for everything a server
originates: notifications, log messages, progress, and the bridged requests
(sampling, elicitation, roots) that the client must answer.

Common usage pattern:
```
    server = Server(name)

    @server.call_tool()
    async def handle_tool_call(name: str, arguments: dict[str, Any]) -> Any:
        ctx = server.request_context
        if ctx.session.capabilities.permits("sampling"):
            reply = await ctx.session.create_message(messages, max_tokens=100)
        ...
```

The ServerSession class is typically created by Server.run and should not be
instantiated directly by users.
"""

import logging
from collections.abc import Mapping, Sequence
from datetime import timedelta
from typing import Any
from uuid import uuid4

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl, BaseModel

import mcp_runtime.types as types
from mcp_runtime.server.models import InitializationOptions
from mcp_runtime.shared.bridge import DEFAULT_BRIDGE_TIMEOUT, RetryPolicy, send_bridged_request
from mcp_runtime.shared.context import RequestContext
from mcp_runtime.shared.exceptions import IncompatibleVersion, ProtocolViolation
from mcp_runtime.shared.session import (
    BaseSession,
    NotificationHandlerFnT,
    RequestHandlerFnT,
    RequestResponder,
    SessionPhase,
)
from mcp_runtime.shared.version import SUPPORTED_PROTOCOL_VERSIONS, negotiate_version

logger = logging.getLogger(__name__)

_LOG_LEVEL_ORDER: list[types.LoggingLevel] = [
    "debug",
    "info",
    "notice",
    "warning",
    "error",
    "critical",
    "alert",
    "emergency",
]


class ServerSession(BaseSession):
    _client_params: types.InitializeRequestParams | None = None
    _protocol_version: str | None = None

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[Any],
        write_stream: MemoryObjectSendStream[Any],
        init_options: InitializationOptions,
        *,
        request_handlers: Mapping[str, RequestHandlerFnT] | None = None,
        notification_handlers: Mapping[str, NotificationHandlerFnT] | None = None,
        lifespan_context: Any = None,
        supported_versions: Sequence[str] = SUPPORTED_PROTOCOL_VERSIONS,
        read_timeout_seconds: timedelta | None = None,
        bridge_timeout: timedelta = DEFAULT_BRIDGE_TIMEOUT,
        bridge_retry: RetryPolicy | None = None,
        session_id: str | None = None,
    ) -> None:
        super().__init__(
            read_stream,
            write_stream,
            role="server",
            local_capabilities=init_options.capabilities,
            receive_request_types=types.CLIENT_REQUEST_TYPES,
            receive_notification_types=types.CLIENT_NOTIFICATION_TYPES,
            read_timeout_seconds=read_timeout_seconds,
            session_id=session_id or uuid4().hex,
        )
        self._init_options = init_options
        self._supported_versions = list(supported_versions)
        self._lifespan_context = lifespan_context
        self._bridge_timeout = bridge_timeout
        self._bridge_retry = bridge_retry
        self._log_threshold: types.LoggingLevel | None = None

        self._request_handlers["initialize"] = self._handle_initialize
        self._request_handlers["ping"] = self._handle_ping
        self._request_handlers["logging/setLevel"] = self._handle_set_level
        self._request_handlers.update(request_handlers or {})
        self._notification_handlers.update(notification_handlers or {})

    @property
    def session_key(self) -> str:
        assert self._session_id is not None
        return self._session_id

    @property
    def client_params(self) -> types.InitializeRequestParams | None:
        return self._client_params

    @property
    def protocol_version(self) -> str | None:
        return self._protocol_version

    @property
    def log_threshold(self) -> types.LoggingLevel | None:
        return self._log_threshold

    def set_log_threshold(self, level: types.LoggingLevel) -> None:
        self._log_threshold = level

    def _make_context(self, responder: RequestResponder) -> RequestContext[Any, Any, Any]:
        ctx = super()._make_context(responder)
        ctx.lifespan_context = self._lifespan_context
        return ctx

    async def _handle_initialize(
        self, ctx: RequestContext[Any, Any, Any], params: types.InitializeRequestParams
    ) -> types.InitializeResult:
        self._transition(SessionPhase.INITIALIZING)
        version = negotiate_version(params.protocolVersion, self._supported_versions)
        if version is None:
            logger.warning(
                "Client requested protocol version %s; supported versions are %s",
                params.protocolVersion,
                ", ".join(self._supported_versions),
            )
            raise IncompatibleVersion(
                f"Unsupported protocol version: {params.protocolVersion}",
                data={"supported": self._supported_versions, "requested": params.protocolVersion},
            )

        self._client_params = params
        self._protocol_version = version
        self._capabilities.negotiate(params.capabilities)
        logger.info(
            "Session %s initializing with %s %s (protocol %s)",
            self.session_key,
            params.clientInfo.name,
            params.clientInfo.version,
            version,
        )
        return types.InitializeResult(
            protocolVersion=version,
            capabilities=self._init_options.capabilities,
            serverInfo=types.Implementation(
                name=self._init_options.server_name,
                version=self._init_options.server_version,
            ),
            instructions=self._init_options.instructions,
        )

    async def _handle_ping(self, ctx: RequestContext[Any, Any, Any], params: Any) -> types.EmptyResult:
        return types.EmptyResult()

    async def _handle_set_level(
        self, ctx: RequestContext[Any, Any, Any], params: types.SetLevelRequestParams
    ) -> types.EmptyResult:
        self.set_log_threshold(params.level)
        return types.EmptyResult()

    async def _received_notification(self, notification: BaseModel) -> None:
        if isinstance(notification, types.InitializedNotification):
            if not self._capabilities.negotiated:
                raise ProtocolViolation("Received initialized notification before a successful initialize")
            self._transition(SessionPhase.OPERATIONAL)
            logger.debug("Session %s is operational", self.session_key)

    async def send_log_message(
        self,
        level: types.LoggingLevel,
        data: Any,
        logger: str | None = None,
        related_request_id: types.RequestId | None = None,
    ) -> None:
        """Send a log message notification, honouring the client's logging/setLevel."""
        if self._log_threshold is not None and _LOG_LEVEL_ORDER.index(level) < _LOG_LEVEL_ORDER.index(
            self._log_threshold
        ):
            return
        await self.send_notification(
            types.LoggingMessageNotification(
                params=types.LoggingMessageNotificationParams(
                    level=level,
                    data=data,
                    logger=logger,
                ),
            ),
            related_request_id,
        )

    async def send_resource_updated(self, uri: AnyUrl | str) -> None:
        """Send a resource updated notification."""
        await self.send_notification(
            types.ResourceUpdatedNotification(
                params=types.ResourceUpdatedNotificationParams(uri=AnyUrl(str(uri))),
            )
        )

    async def create_message(
        self,
        messages: list[types.SamplingMessage],
        *,
        max_tokens: int,
        system_prompt: str | None = None,
        include_context: types.IncludeContext | None = None,
        temperature: float | None = None,
        stop_sequences: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        model_preferences: types.ModelPreferences | None = None,
        related_request_id: types.RequestId | None = None,
    ) -> types.CreateMessageResult:
        """Send a sampling/createMessage request."""
        return await send_bridged_request(
            self,
            types.CreateMessageRequest(
                params=types.CreateMessageRequestParams(
                    messages=messages,
                    systemPrompt=system_prompt,
                    includeContext=include_context,
                    temperature=temperature,
                    maxTokens=max_tokens,
                    stopSequences=stop_sequences,
                    metadata=metadata,
                    modelPreferences=model_preferences,
                ),
            ),
            types.CreateMessageResult,
            deadline=self._bridge_timeout,
            retry=self._bridge_retry,
            related_request_id=related_request_id,
        )

    async def elicit(
        self,
        message: str,
        requestedSchema: types.ElicitRequestedSchema,
        related_request_id: types.RequestId | None = None,
    ) -> types.ElicitResult:
        """Send an elicitation/create request.

        Args:
            message: The message to present to the user
            requestedSchema: Schema defining the expected response structure

        Returns:
            The client's response
        """
        return await send_bridged_request(
            self,
            types.ElicitRequest(
                params=types.ElicitRequestParams(
                    message=message,
                    requestedSchema=requestedSchema,
                ),
            ),
            types.ElicitResult,
            deadline=self._bridge_timeout,
            retry=self._bridge_retry,
            related_request_id=related_request_id,
        )

    async def list_roots(self) -> types.ListRootsResult:
        """Send a roots/list request."""
        return await send_bridged_request(
            self,
            types.ListRootsRequest(),
            types.ListRootsResult,
            deadline=self._bridge_timeout,
            retry=self._bridge_retry,
        )

    async def send_ping(self) -> types.EmptyResult:
        """Send a ping request."""
        return await self.send_request(types.PingRequest(), types.EmptyResult)

    async def send_resource_list_changed(self) -> None:
        """Send a resource list changed notification."""
        await self.send_notification(types.ResourceListChangedNotification())

    async def send_tool_list_changed(self) -> None:
        """Send a tool list changed notification."""
        await self.send_notification(types.ToolListChangedNotification())

    async def send_prompt_list_changed(self) -> None:
        """Send a prompt list changed notification."""
        await self.send_notification(types.PromptListChangedNotification())
