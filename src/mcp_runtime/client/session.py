from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from typing import Any, Literal, Protocol, TypeVar

import anyio
import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from jsonschema import SchemaError, ValidationError, validate
from pydantic import AnyUrl, BaseModel

import mcp_runtime.types as types
from mcp_runtime.client.subscriptions import SubscriptionTracker
from mcp_runtime.shared.bridge import BridgePolicy, PassthroughPolicy, answer_bridged_request
from mcp_runtime.shared.codec import notification_message
from mcp_runtime.shared.context import RequestContext
from mcp_runtime.shared.exceptions import IncompatibleVersion, McpError, TransportFailure
from mcp_runtime.shared.message import SessionMessage
from mcp_runtime.shared.session import BaseSession, ProgressFnT, SessionPhase
from mcp_runtime.shared.version import SUPPORTED_PROTOCOL_VERSIONS

DEFAULT_CLIENT_INFO = types.Implementation(name="mcp-session-runtime", version="0.1.0")

logger = logging.getLogger(__name__)

ListChangedKind = Literal["tools", "resources", "prompts"]
PageT = TypeVar("PageT", bound=types.PaginatedResult)


class SamplingFnT(Protocol):
    async def __call__(
        self,
        context: RequestContext[ClientSession, Any],
        params: types.CreateMessageRequestParams,
    ) -> types.CreateMessageResult | types.ErrorData: ...


class ElicitationFnT(Protocol):
    async def __call__(
        self,
        context: RequestContext[ClientSession, Any],
        params: types.ElicitRequestParams,
    ) -> types.ElicitResult | types.ErrorData: ...


class ListRootsFnT(Protocol):
    async def __call__(self, context: RequestContext[ClientSession, Any]) -> types.ListRootsResult | types.ErrorData: ...


class LoggingFnT(Protocol):
    async def __call__(
        self,
        params: types.LoggingMessageNotificationParams,
    ) -> None: ...


class ResourceUpdatedFnT(Protocol):
    async def __call__(self, uri: AnyUrl) -> None: ...


ListChangedFnT = Callable[["ClientSession"], Awaitable[None]]


async def _default_logging_callback(
    params: types.LoggingMessageNotificationParams,
) -> None:
    pass


async def _default_resource_updated_callback(uri: AnyUrl) -> None:
    await anyio.lowlevel.checkpoint()


_LIST_CHANGED_METHODS: dict[str, ListChangedKind] = {
    "notifications/tools/list_changed": "tools",
    "notifications/resources/list_changed": "resources",
    "notifications/prompts/list_changed": "prompts",
}


class ClientSession(BaseSession):
    """The client-role end of a session.

    Capabilities are derived from the callbacks given at construction: a
    sampling callback declares ``sampling``, an elicitation callback declares
    ``elicitation`` and a roots callback declares ``roots``. A server request
    for an undeclared feature is rejected before it reaches any callback.
    Bridged requests pass through `bridge_policy` before and after the
    callback runs.
    """

    def __init__(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        read_timeout_seconds: timedelta | None = None,
        sampling_callback: SamplingFnT | None = None,
        elicitation_callback: ElicitationFnT | None = None,
        list_roots_callback: ListRootsFnT | None = None,
        logging_callback: LoggingFnT | None = None,
        resource_updated_callback: ResourceUpdatedFnT | None = None,
        bridge_policy: BridgePolicy | None = None,
        client_info: types.Implementation | None = None,
        protocol_version: str = types.LATEST_PROTOCOL_VERSION,
        supported_versions: Sequence[str] = SUPPORTED_PROTOCOL_VERSIONS,
        subscriptions: SubscriptionTracker | None = None,
        session_id: str | None = None,
    ) -> None:
        capabilities = types.ClientCapabilities(
            sampling=types.SamplingCapability() if sampling_callback is not None else None,
            elicitation=types.ElicitationCapability() if elicitation_callback is not None else None,
            roots=types.RootsCapability(listChanged=True) if list_roots_callback is not None else None,
        )
        super().__init__(
            read_stream,
            write_stream,
            role="client",
            local_capabilities=capabilities,
            receive_request_types=types.SERVER_REQUEST_TYPES,
            receive_notification_types=types.SERVER_NOTIFICATION_TYPES,
            read_timeout_seconds=read_timeout_seconds,
            session_id=session_id,
        )
        self._client_info = client_info or DEFAULT_CLIENT_INFO
        self._client_capabilities = capabilities
        self._protocol_version = protocol_version
        self._supported_versions = list(supported_versions)
        self._bridge_policy = bridge_policy or PassthroughPolicy()
        self._logging_callback = logging_callback or _default_logging_callback
        self._resource_updated_callback = resource_updated_callback or _default_resource_updated_callback
        self._subscriptions = subscriptions if subscriptions is not None else SubscriptionTracker()
        self._list_changed_callbacks: dict[ListChangedKind, list[ListChangedFnT]] = {
            "tools": [],
            "resources": [],
            "prompts": [],
        }
        self._tool_output_schemas: dict[str, dict[str, Any] | None] = {}
        self._initialize_result: types.InitializeResult | None = None

        self._request_handlers["ping"] = self._handle_ping
        if sampling_callback is not None:
            self._request_handlers["sampling/createMessage"] = self._bridged(
                lambda params: types.CreateMessageRequest(params=params), sampling_callback
            )
        if elicitation_callback is not None:
            self._request_handlers["elicitation/create"] = self._bridged(
                lambda params: types.ElicitRequest(params=params), elicitation_callback
            )
        if list_roots_callback is not None:

            async def list_roots(context: RequestContext[Any, Any, Any], params: Any):
                return await list_roots_callback(context)

            self._request_handlers["roots/list"] = self._bridged(
                lambda params: types.ListRootsRequest(params=params), list_roots
            )

        self._notification_handlers["notifications/message"] = self._handle_log_message
        self._notification_handlers["notifications/resources/updated"] = self._handle_resource_updated
        for method in _LIST_CHANGED_METHODS:
            self._notification_handlers[method] = self._handle_list_changed

    def _bridged(
        self,
        build_request: Callable[[Any], BaseModel],
        callback: Callable[[RequestContext[Any, Any, Any], Any], Awaitable[BaseModel | types.ErrorData]],
    ):
        async def handler(context: RequestContext[Any, Any, Any], params: Any) -> BaseModel | types.ErrorData:
            return await answer_bridged_request(self._bridge_policy, context, build_request(params), callback)

        return handler

    @property
    def subscriptions(self) -> SubscriptionTracker:
        return self._subscriptions

    @property
    def initialize_result(self) -> types.InitializeResult | None:
        return self._initialize_result

    @property
    def protocol_version(self) -> str | None:
        if self._initialize_result is None:
            return None
        return str(self._initialize_result.protocolVersion)

    def get_server_capabilities(self) -> types.ServerCapabilities | None:
        """Return the server capabilities received during initialization.

        Returns None if the session has not been initialized yet.
        """
        if self._initialize_result is None:
            return None
        return self._initialize_result.capabilities

    def add_list_changed_callback(self, kind: ListChangedKind, callback: ListChangedFnT) -> None:
        """Run `callback` whenever the server reports that its `kind` catalog changed."""
        self._list_changed_callbacks[kind].append(callback)

    async def initialize(self) -> types.InitializeResult:
        call = await self.start_request(
            types.InitializeRequest(
                params=types.InitializeRequestParams(
                    protocolVersion=self._protocol_version,
                    capabilities=self._client_capabilities,
                    clientInfo=self._client_info,
                ),
            )
        )
        self._transition(SessionPhase.INITIALIZING)
        result = await self.join_request(call, types.InitializeResult)

        if str(result.protocolVersion) not in self._supported_versions:
            raise IncompatibleVersion(f"Unsupported protocol version from the server: {result.protocolVersion}")

        self._initialize_result = result
        self._capabilities.negotiate(result.capabilities)

        # Become operational before the server can act on `initialized`
        self._transition(SessionPhase.OPERATIONAL)
        await self._send_initialized()
        logger.info(
            "Initialized session with %s %s (protocol %s)",
            result.serverInfo.name,
            result.serverInfo.version,
            result.protocolVersion,
        )

        await self._replay_subscriptions()
        return result

    async def _send_initialized(self) -> None:
        try:
            await self._write_stream.send(SessionMessage(message=notification_message(types.InitializedNotification())))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            raise TransportFailure("Cannot send 'notifications/initialized': transport is closed") from exc

    async def _replay_subscriptions(self) -> None:
        targets = self._subscriptions.targets()
        if not targets:
            return
        if not self._capabilities.permits("resources.subscribe"):
            logger.warning("Server does not support subscriptions; dropping %d tracked subscriptions", len(targets))
            return
        for uri in targets:
            try:
                await self.send_request(
                    types.SubscribeRequest(params=types.SubscribeRequestParams(uri=AnyUrl(uri))),
                    types.EmptyResult,
                )
            except McpError as exc:
                logger.warning("Could not restore subscription to %s: %s", uri, exc)

    async def send_ping(self) -> types.EmptyResult:
        """Send a ping request."""
        return await self.send_request(types.PingRequest(), types.EmptyResult)

    async def set_logging_level(self, level: types.LoggingLevel) -> types.EmptyResult:
        """Send a logging/setLevel request."""
        return await self.send_request(
            types.SetLevelRequest(params=types.SetLevelRequestParams(level=level)),
            types.EmptyResult,
        )

    async def list_resources(self, cursor: str | None = None) -> types.ListResourcesResult:
        """Send a resources/list request."""
        return await self.send_request(
            types.ListResourcesRequest(params=types.PaginatedRequestParams(cursor=cursor) if cursor else None),
            types.ListResourcesResult,
        )

    async def list_resource_templates(self, cursor: str | None = None) -> types.ListResourceTemplatesResult:
        """Send a resources/templates/list request."""
        return await self.send_request(
            types.ListResourceTemplatesRequest(params=types.PaginatedRequestParams(cursor=cursor) if cursor else None),
            types.ListResourceTemplatesResult,
        )

    async def read_resource(self, uri: AnyUrl | str) -> types.ReadResourceResult:
        """Send a resources/read request."""
        return await self.send_request(
            types.ReadResourceRequest(params=types.ReadResourceRequestParams(uri=AnyUrl(str(uri)))),
            types.ReadResourceResult,
        )

    async def subscribe_resource(self, uri: AnyUrl | str) -> types.EmptyResult:
        """Send a resources/subscribe request and remember the subscription."""
        result = await self.send_request(
            types.SubscribeRequest(params=types.SubscribeRequestParams(uri=AnyUrl(str(uri)))),
            types.EmptyResult,
        )
        self._subscriptions.track(uri)
        return result

    async def unsubscribe_resource(self, uri: AnyUrl | str) -> types.EmptyResult:
        """Send a resources/unsubscribe request and forget the subscription."""
        self._subscriptions.untrack(uri)
        return await self.send_request(
            types.UnsubscribeRequest(params=types.UnsubscribeRequestParams(uri=AnyUrl(str(uri)))),
            types.EmptyResult,
        )

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
        progress_callback: ProgressFnT | None = None,
    ) -> types.CallToolResult:
        """Send a tools/call request with optional progress callback support.

        A tool that ran and failed comes back as a result with isError set; it
        is not raised.
        """
        result = await self.send_request(
            types.CallToolRequest(params=types.CallToolRequestParams(name=name, arguments=arguments)),
            types.CallToolResult,
            request_read_timeout_seconds=read_timeout_seconds,
            progress_callback=progress_callback,
        )

        if not result.isError:
            await self._validate_tool_result(name, result)

        return result

    async def _validate_tool_result(self, name: str, result: types.CallToolResult) -> None:
        """Validate the structured content of a tool result against its output schema."""
        if name not in self._tool_output_schemas:
            # refresh output schema cache
            await self.list_all_tools()

        output_schema = None
        if name in self._tool_output_schemas:
            output_schema = self._tool_output_schemas.get(name)
        else:
            logger.warning("Tool %s not listed by server, cannot validate any structured content", name)

        if output_schema is not None:
            if result.structuredContent is None:
                raise RuntimeError(f"Tool {name} has an output schema but did not return structured content")
            try:
                validate(result.structuredContent, output_schema)
            except ValidationError as e:
                raise RuntimeError(f"Invalid structured content returned by tool {name}: {e}")
            except SchemaError as e:
                raise RuntimeError(f"Invalid schema for tool {name}: {e}")

    async def list_prompts(self, cursor: str | None = None) -> types.ListPromptsResult:
        """Send a prompts/list request."""
        return await self.send_request(
            types.ListPromptsRequest(params=types.PaginatedRequestParams(cursor=cursor) if cursor else None),
            types.ListPromptsResult,
        )

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
        """Send a prompts/get request."""
        return await self.send_request(
            types.GetPromptRequest(params=types.GetPromptRequestParams(name=name, arguments=arguments)),
            types.GetPromptResult,
        )

    async def list_tools(self, cursor: str | None = None) -> types.ListToolsResult:
        """Send a tools/list request."""
        result = await self.send_request(
            types.ListToolsRequest(params=types.PaginatedRequestParams(cursor=cursor) if cursor else None),
            types.ListToolsResult,
        )

        # Cache tool output schemas for future validation
        for tool in result.tools:
            self._tool_output_schemas[tool.name] = tool.outputSchema

        return result

    async def _collect_pages(self, fetch: Callable[[str | None], Awaitable[PageT]]) -> list[PageT]:
        pages: list[PageT] = []
        cursor: str | None = None
        while True:
            page = await fetch(cursor)
            pages.append(page)
            if not page.nextCursor:
                return pages
            cursor = page.nextCursor

    async def list_all_tools(self) -> list[types.Tool]:
        """List tools, following pagination cursors until exhausted."""
        return [tool for page in await self._collect_pages(self.list_tools) for tool in page.tools]

    async def list_all_resources(self) -> list[types.Resource]:
        return [resource for page in await self._collect_pages(self.list_resources) for resource in page.resources]

    async def list_all_prompts(self) -> list[types.Prompt]:
        return [prompt for page in await self._collect_pages(self.list_prompts) for prompt in page.prompts]

    async def send_roots_list_changed(self) -> None:
        """Send a roots/list_changed notification."""
        await self.send_notification(types.RootsListChangedNotification())

    async def _handle_ping(self, context: RequestContext[Any, Any, Any], params: Any) -> types.EmptyResult:
        return types.EmptyResult()

    async def _handle_log_message(self, notification: types.LoggingMessageNotification) -> None:
        await self._logging_callback(notification.params)

    async def _handle_resource_updated(self, notification: types.ResourceUpdatedNotification) -> None:
        uri = notification.params.uri
        if not self._subscriptions.is_tracked(uri):
            # Benign race with an unsubscribe
            logger.debug("Ignoring update for unsubscribed resource %s", uri)
            return
        await self._resource_updated_callback(uri)

    async def _handle_list_changed(self, notification: BaseModel) -> None:
        kind = _LIST_CHANGED_METHODS[getattr(notification, "method")]
        if kind == "tools":
            self._tool_output_schemas.clear()
        for callback in list(self._list_changed_callbacks[kind]):
            await callback(self)
