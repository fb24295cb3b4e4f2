"""
Server Module

This module provides a framework for creating a server that speaks the
session protocol. The Server object is an explicit configuration object: it
collects handlers registered with decorators, and every session created by
`run` receives its own copy of the resulting method table.

Usage:
1. Create a Server instance:
   server = Server("your_server_name")

2. Define request handlers using decorators:
   @server.list_prompts()
   async def handle_list_prompts() -> list[types.Prompt]:
       # Implementation

   @server.get_prompt()
   async def handle_get_prompt(
       name: str, arguments: dict[str, str] | None
   ) -> types.GetPromptResult:
       # Implementation

   @server.list_tools()
   async def handle_list_tools() -> list[types.Tool]:
       # Implementation

   @server.call_tool()
   async def handle_call_tool(
       name: str, arguments: dict[str, Any]
   ) -> Iterable[types.ContentBlock] | dict[str, Any]:
       # Implementation

   @server.subscribe_resource()
   async def handle_subscribe(uri: AnyUrl) -> None:
       # Optional hook; subscription bookkeeping is built in

3. Run the server against a transport:
   async def main():
       async with stdio_server() as (read_stream, write_stream):
           await server.run(
               read_stream,
               write_stream,
               server.create_initialization_options()
           )

   asyncio.run(main())

Handlers that need the session (to log, report progress or issue bridged
requests) read it from `server.request_context`.
"""

from __future__ import annotations

import base64
import contextvars
import inspect
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any, Generic, Literal, TypeAlias, cast

import jsonschema
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import AnyUrl, BaseModel
from typing_extensions import TypeVar

import mcp_runtime.types as types
from mcp_runtime.server.models import InitializationOptions
from mcp_runtime.server.session import ServerSession
from mcp_runtime.server.stdio import stdio_server
from mcp_runtime.server.subscriptions import SubscriptionManager
from mcp_runtime.settings import RuntimeSettings
from mcp_runtime.shared.bridge import DEFAULT_BRIDGE_TIMEOUT, RetryPolicy
from mcp_runtime.shared.context import RequestContext
from mcp_runtime.shared.exceptions import McpError, UnknownTarget
from mcp_runtime.shared.logging import configure_logging
from mcp_runtime.shared.message import SessionMessage
from mcp_runtime.shared.session import BaseSession, RequestHandlerFnT
from mcp_runtime.shared.version import SUPPORTED_PROTOCOL_VERSIONS

logger = logging.getLogger(__name__)

LifespanResultT = TypeVar("LifespanResultT", default=Any)

# type aliases for tool call results
StructuredContent: TypeAlias = dict[str, Any]
UnstructuredContent: TypeAlias = Iterable[types.ContentBlock]
CombinationContent: TypeAlias = tuple[UnstructuredContent, StructuredContent]

ListChangedKind = Literal["tools", "resources", "prompts"]

# This will be properly typed in each Server instance's context
request_ctx: contextvars.ContextVar[RequestContext[ServerSession, Any, Any]] = contextvars.ContextVar("request_ctx")


class NotificationOptions:
    def __init__(
        self,
        prompts_changed: bool = False,
        resources_changed: bool = False,
        tools_changed: bool = False,
    ):
        self.prompts_changed = prompts_changed
        self.resources_changed = resources_changed
        self.tools_changed = tools_changed


@asynccontextmanager
async def lifespan(_: Server[LifespanResultT]) -> AsyncIterator[dict[str, Any]]:
    """Default lifespan context manager that does nothing.

    Args:
        server: The server instance this lifespan is managing

    Returns:
        An empty context object
    """
    yield {}


def _accepts_cursor(func: Callable[..., Any]) -> bool:
    return len(inspect.signature(func).parameters) > 0


class Server(Generic[LifespanResultT]):
    def __init__(
        self,
        name: str,
        version: str | None = None,
        instructions: str | None = None,
        lifespan: Callable[
            [Server[LifespanResultT]],
            AbstractAsyncContextManager[LifespanResultT],
        ] = lifespan,
    ):
        self.name = name
        self.version = version
        self.instructions = instructions
        self.lifespan = lifespan
        self.request_handlers: dict[str, RequestHandlerFnT] = {}
        self.notification_handlers: dict[str, Callable[..., Awaitable[None]]] = {}
        self.subscriptions = SubscriptionManager()
        self._sessions: dict[str, ServerSession] = {}
        # Per session, so one client's listing never changes another's dispatch
        self._tool_caches: dict[str, dict[str, types.Tool]] = {}
        self._list_tools_page: Callable[[str | None], Awaitable[types.ListToolsResult]] | None = None
        self._subscribe_hook: Callable[[AnyUrl], Awaitable[None]] | None = None
        self._unsubscribe_hook: Callable[[AnyUrl], Awaitable[None]] | None = None
        logger.debug("Initializing server %r", name)

    def create_initialization_options(
        self,
        notification_options: NotificationOptions | None = None,
        experimental_capabilities: dict[str, dict[str, Any]] | None = None,
    ) -> InitializationOptions:
        """Create initialization options from this server instance."""

        def pkg_version(package: str) -> str:
            try:
                from importlib.metadata import version

                return version(package)
            except Exception:
                pass

            return "unknown"

        return InitializationOptions(
            server_name=self.name,
            server_version=self.version if self.version else pkg_version("mcp-session-runtime"),
            capabilities=self.get_capabilities(
                notification_options or NotificationOptions(),
                experimental_capabilities or {},
            ),
            instructions=self.instructions,
        )

    def get_capabilities(
        self,
        notification_options: NotificationOptions,
        experimental_capabilities: dict[str, dict[str, Any]],
    ) -> types.ServerCapabilities:
        """Convert existing handlers to a ServerCapabilities object."""
        prompts_capability = None
        resources_capability = None
        tools_capability = None
        logging_capability = None

        # Set prompt capabilities if handler exists
        if "prompts/list" in self.request_handlers:
            prompts_capability = types.PromptsCapability(listChanged=notification_options.prompts_changed)

        # Set resource capabilities if handler exists
        if "resources/list" in self.request_handlers:
            resources_capability = types.ResourcesCapability(
                subscribe="resources/subscribe" in self.request_handlers,
                listChanged=notification_options.resources_changed,
            )

        # Set tool capabilities if handler exists
        if "tools/list" in self.request_handlers:
            tools_capability = types.ToolsCapability(listChanged=notification_options.tools_changed)

        # Set logging capabilities if handler exists
        if "logging/setLevel" in self.request_handlers:
            logging_capability = types.LoggingCapability()

        return types.ServerCapabilities(
            prompts=prompts_capability,
            resources=resources_capability,
            tools=tools_capability,
            logging=logging_capability,
            experimental=experimental_capabilities or None,
        )

    @property
    def request_context(self) -> RequestContext[ServerSession, LifespanResultT, Any]:
        """If called outside of a request context, this will raise a LookupError."""
        return request_ctx.get()

    @property
    def sessions(self) -> list[ServerSession]:
        """Sessions currently served by this server, in connection order."""
        return list(self._sessions.values())

    def _contextual(self, func: Callable[[Any], Awaitable[BaseModel]]) -> RequestHandlerFnT:
        """Adapt a params-only handler to the session's (ctx, params) signature."""

        async def handler(ctx: RequestContext[Any, Any, Any], params: Any) -> BaseModel:
            # Set our global state that can be retrieved via server.request_context
            token = request_ctx.set(ctx)
            try:
                return await func(params)
            finally:
                request_ctx.reset(token)

        return handler

    def list_prompts(self):
        def decorator(func: Callable[..., Awaitable[list[types.Prompt] | types.ListPromptsResult]]):
            logger.debug("Registering handler for prompts/list")

            async def handler(params: types.PaginatedRequestParams | None):
                cursor = params.cursor if params else None
                prompts = await func(cursor) if _accepts_cursor(func) else await func()
                if isinstance(prompts, types.ListPromptsResult):
                    return prompts
                return types.ListPromptsResult(prompts=prompts)

            self.request_handlers["prompts/list"] = self._contextual(handler)
            return func

        return decorator

    def get_prompt(self):
        def decorator(
            func: Callable[[str, dict[str, str] | None], Awaitable[types.GetPromptResult]],
        ):
            logger.debug("Registering handler for prompts/get")

            async def handler(params: types.GetPromptRequestParams):
                return await func(params.name, params.arguments)

            self.request_handlers["prompts/get"] = self._contextual(handler)
            return func

        return decorator

    def list_resources(self):
        def decorator(func: Callable[..., Awaitable[list[types.Resource] | types.ListResourcesResult]]):
            logger.debug("Registering handler for resources/list")

            async def handler(params: types.PaginatedRequestParams | None):
                cursor = params.cursor if params else None
                resources = await func(cursor) if _accepts_cursor(func) else await func()
                if isinstance(resources, types.ListResourcesResult):
                    return resources
                return types.ListResourcesResult(resources=resources)

            self.request_handlers["resources/list"] = self._contextual(handler)
            return func

        return decorator

    def list_resource_templates(self):
        def decorator(func: Callable[[], Awaitable[list[types.ResourceTemplate]]]):
            logger.debug("Registering handler for resources/templates/list")

            async def handler(_: Any):
                templates = await func()
                return types.ListResourceTemplatesResult(resourceTemplates=templates)

            self.request_handlers["resources/templates/list"] = self._contextual(handler)
            return func

        return decorator

    def read_resource(self):
        def decorator(func: Callable[[AnyUrl], Awaitable[str | bytes | types.ReadResourceResult]]):
            logger.debug("Registering handler for resources/read")

            async def handler(params: types.ReadResourceRequestParams):
                result = await func(params.uri)
                match result:
                    case types.ReadResourceResult():
                        return result
                    case str() as text:
                        return types.ReadResourceResult(
                            contents=[types.TextResourceContents(uri=params.uri, text=text, mimeType="text/plain")]
                        )
                    case bytes() as data:
                        return types.ReadResourceResult(
                            contents=[
                                types.BlobResourceContents(
                                    uri=params.uri,
                                    blob=base64.b64encode(data).decode(),
                                    mimeType="application/octet-stream",
                                )
                            ]
                        )
                    case _:
                        raise ValueError(f"Unexpected return type from read_resource: {type(result)}")

            self.request_handlers["resources/read"] = self._contextual(handler)
            return func

        return decorator

    def set_logging_level(self):
        def decorator(func: Callable[[types.LoggingLevel], Awaitable[None]]):
            logger.debug("Registering handler for logging/setLevel")

            async def handler(params: types.SetLevelRequestParams):
                request_ctx.get().session.set_log_threshold(params.level)
                await func(params.level)
                return types.EmptyResult()

            self.request_handlers["logging/setLevel"] = self._contextual(handler)
            return func

        return decorator

    def _register_subscription_handlers(self) -> None:
        if "resources/subscribe" in self.request_handlers:
            return

        async def subscribe(params: types.SubscribeRequestParams):
            session = request_ctx.get().session
            if self.subscriptions.subscribe(session, str(params.uri)) and self._subscribe_hook is not None:
                await self._subscribe_hook(params.uri)
            return types.EmptyResult()

        async def unsubscribe(params: types.UnsubscribeRequestParams):
            session = request_ctx.get().session
            if self.subscriptions.unsubscribe(session, str(params.uri)) and self._unsubscribe_hook is not None:
                await self._unsubscribe_hook(params.uri)
            return types.EmptyResult()

        self.request_handlers["resources/subscribe"] = self._contextual(subscribe)
        self.request_handlers["resources/unsubscribe"] = self._contextual(unsubscribe)

    def enable_subscriptions(self) -> None:
        """Serve resources/subscribe and resources/unsubscribe without custom hooks."""
        self._register_subscription_handlers()

    def subscribe_resource(self):
        def decorator(func: Callable[[AnyUrl], Awaitable[None]]):
            logger.debug("Registering handler for resources/subscribe")
            self._subscribe_hook = func
            self._register_subscription_handlers()
            return func

        return decorator

    def unsubscribe_resource(self):
        def decorator(func: Callable[[AnyUrl], Awaitable[None]]):
            logger.debug("Registering handler for resources/unsubscribe")
            self._unsubscribe_hook = func
            self._register_subscription_handlers()
            return func

        return decorator

    def list_tools(self):
        def decorator(func: Callable[..., Awaitable[list[types.Tool] | types.ListToolsResult]]):
            logger.debug("Registering handler for tools/list")

            async def fetch_page(cursor: str | None) -> types.ListToolsResult:
                tools = await func(cursor) if _accepts_cursor(func) else await func()
                return tools if isinstance(tools, types.ListToolsResult) else types.ListToolsResult(tools=tools)

            async def handler(params: types.PaginatedRequestParams | None):
                result = await fetch_page(params.cursor if params else None)
                # A single page only adds to what call_tool knows about
                cache = self._tool_caches.setdefault(request_ctx.get().session.session_key, {})
                cache.update((tool.name, tool) for tool in result.tools)
                return result

            self._list_tools_page = fetch_page
            self.request_handlers["tools/list"] = self._contextual(handler)
            return func

        return decorator

    def _make_error_result(self, error_message: str) -> types.CallToolResult:
        """Create a CallToolResult with an error."""
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=error_message)],
            isError=True,
        )

    async def _list_every_tool(self) -> dict[str, types.Tool]:
        assert self._list_tools_page is not None
        tools: dict[str, types.Tool] = {}
        cursor: str | None = None
        seen: set[str] = set()
        while True:
            page = await self._list_tools_page(cursor)
            tools.update((tool.name, tool) for tool in page.tools)
            cursor = page.nextCursor
            if cursor is None or cursor in seen:
                return tools
            seen.add(cursor)

    async def _get_cached_tool_definition(self, tool_name: str) -> types.Tool | None:
        """Get tool definition from the calling session's cache, refreshing if necessary.

        A miss re-reads every page and replaces that session's cache. Returns
        the Tool object if found, None if no tools/list handler exists.

        Raises:
            UnknownTarget: if tools are listed but none has this name
        """
        if self._list_tools_page is None:
            return None

        session_key = request_ctx.get().session.session_key
        cache = self._tool_caches.get(session_key, {})
        if tool_name not in cache:
            logger.debug("Tool cache miss for %s, refreshing cache", tool_name)
            cache = await self._list_every_tool()
            self._tool_caches[session_key] = cache

        tool = cache.get(tool_name)
        if tool is None:
            raise UnknownTarget(f"Unknown tool: {tool_name}")
        return tool

    def call_tool(self, *, validate_input: bool = True):
        """Register a tool call handler.

        Args:
            validate_input: If True, validates input against inputSchema. Default is True.

        The handler validates input against inputSchema (if validate_input=True), calls the tool function,
        and builds a CallToolResult with the results:
        - Unstructured content (iterable of ContentBlock): returned in content
        - Structured content (dict): returned in structuredContent, serialized JSON text returned in content
        - Both: returned in content and structuredContent

        A tool function that raises produces a result with isError set; only a
        call to an unknown tool is answered with a protocol error.
        """

        def decorator(
            func: Callable[
                ...,
                Awaitable[UnstructuredContent | StructuredContent | CombinationContent | types.CallToolResult],
            ],
        ):
            logger.debug("Registering handler for tools/call")

            async def handler(params: types.CallToolRequestParams):
                tool_name = params.name
                arguments = params.arguments or {}
                tool = await self._get_cached_tool_definition(tool_name)

                try:
                    # input validation
                    if validate_input and tool:
                        try:
                            jsonschema.validate(instance=arguments, schema=tool.inputSchema)
                        except jsonschema.ValidationError as e:
                            return self._make_error_result(f"Input validation error: {e.message}")

                    # tool call
                    results = await func(tool_name, arguments)

                    # output normalization
                    unstructured_content: UnstructuredContent
                    maybe_structured_content: StructuredContent | None
                    if isinstance(results, types.CallToolResult):
                        return results
                    elif isinstance(results, tuple) and len(results) == 2:
                        # tool returned both structured and unstructured content
                        unstructured_content, maybe_structured_content = cast(CombinationContent, results)
                    elif isinstance(results, dict):
                        # tool returned structured content only
                        maybe_structured_content = cast(StructuredContent, results)
                        unstructured_content = [types.TextContent(type="text", text=json.dumps(results, indent=2))]
                    elif hasattr(results, "__iter__"):
                        # tool returned unstructured content only
                        unstructured_content = cast(UnstructuredContent, results)
                        maybe_structured_content = None
                    else:
                        return self._make_error_result(f"Unexpected return type from tool: {type(results).__name__}")

                    # output validation
                    if tool and tool.outputSchema is not None:
                        if maybe_structured_content is None:
                            return self._make_error_result(
                                "Output validation error: outputSchema defined but no structured output returned"
                            )
                        try:
                            jsonschema.validate(instance=maybe_structured_content, schema=tool.outputSchema)
                        except jsonschema.ValidationError as e:
                            return self._make_error_result(f"Output validation error: {e.message}")

                    return types.CallToolResult(
                        content=list(unstructured_content),
                        structuredContent=maybe_structured_content,
                        isError=False,
                    )
                except McpError:
                    raise
                except Exception as e:
                    logger.info("Tool %r failed: %s", tool_name, e)
                    return self._make_error_result(str(e))

            self.request_handlers["tools/call"] = self._contextual(handler)
            return func

        return decorator

    def progress_notification(self):
        def decorator(
            func: Callable[[str | int, float, float | None, str | None], Awaitable[None]],
        ):
            logger.debug("Registering handler for notifications/progress")

            async def handler(notification: types.ProgressNotification):
                await func(
                    notification.params.progressToken,
                    notification.params.progress,
                    notification.params.total,
                    notification.params.message,
                )

            self.notification_handlers["notifications/progress"] = handler
            return func

        return decorator

    def roots_list_changed(self):
        def decorator(func: Callable[[], Awaitable[None]]):
            logger.debug("Registering handler for notifications/roots/list_changed")

            async def handler(_: types.RootsListChangedNotification):
                await func()

            self.notification_handlers["notifications/roots/list_changed"] = handler
            return func

        return decorator

    async def notify_resource_updated(self, uri: AnyUrl | str) -> int:
        """Tell every session subscribed to `uri` that its content changed."""
        return await self.subscriptions.notify_changed(str(AnyUrl(str(uri))))

    async def notify_list_changed(self, kind: ListChangedKind) -> int:
        """Broadcast a list-changed notification to every operational session."""
        notified = 0
        for session in self.sessions:
            if not session.is_operational:
                continue
            try:
                match kind:
                    case "tools":
                        await session.send_tool_list_changed()
                    case "resources":
                        await session.send_resource_list_changed()
                    case "prompts":
                        await session.send_prompt_list_changed()
            except McpError as exc:
                logger.warning("Could not send %s list change to session %s: %s", kind, session.session_key, exc)
                continue
            notified += 1
        return notified

    def _attach(self, session: ServerSession) -> None:
        self._sessions[session.session_key] = session

        def detach(closed: BaseSession) -> None:
            self._sessions.pop(session.session_key, None)
            self._tool_caches.pop(session.session_key, None)
            dropped = self.subscriptions.drop_session(session)
            logger.debug("Session %s detached, %d subscriptions dropped", session.session_key, dropped)

        session.add_close_callback(detach)

    async def run(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
        initialization_options: InitializationOptions,
        *,
        supported_versions: Sequence[str] = SUPPORTED_PROTOCOL_VERSIONS,
        read_timeout_seconds: timedelta | None = None,
        bridge_timeout: timedelta = DEFAULT_BRIDGE_TIMEOUT,
        bridge_retry: RetryPolicy | None = None,
        session_id: str | None = None,
    ):
        async with AsyncExitStack() as stack:
            lifespan_context = await stack.enter_async_context(self.lifespan(self))
            session = await stack.enter_async_context(
                ServerSession(
                    read_stream,
                    write_stream,
                    initialization_options,
                    request_handlers=dict(self.request_handlers),
                    notification_handlers=dict(self.notification_handlers),
                    lifespan_context=lifespan_context,
                    supported_versions=supported_versions,
                    read_timeout_seconds=read_timeout_seconds,
                    bridge_timeout=bridge_timeout,
                    bridge_retry=bridge_retry,
                    session_id=session_id,
                )
            )
            self._attach(session)
            await session.wait_closed()
            logger.debug("Session %s finished", session.session_key)

    async def run_stdio(self, settings: RuntimeSettings | None = None) -> None:
        """Serve one session over this process' stdin and stdout.

        Logging goes to stderr at the configured level; deadlines and the
        bridge retry policy come from `settings`.
        """
        settings = settings or RuntimeSettings()
        configure_logging(settings.log_level)
        async with stdio_server() as (read_stream, write_stream):
            await self.run(
                read_stream,
                write_stream,
                self.create_initialization_options(),
                read_timeout_seconds=settings.request_timeout,
                bridge_timeout=settings.bridge_timeout,
                bridge_retry=settings.retry_policy,
            )
