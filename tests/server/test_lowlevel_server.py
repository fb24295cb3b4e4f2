from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import anyio
import pytest
from pydantic import AnyUrl

from mcp_runtime import types
from mcp_runtime.client.session import ClientSession
from mcp_runtime.server.lowlevel.server import NotificationOptions, Server
from mcp_runtime.shared.exceptions import CapabilityNotDeclared, UnknownTarget
from mcp_runtime.shared.memory import create_connected_server_and_client_session


def make_tool_server() -> Server:
    server = Server(name="tools")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name="add",
                inputSchema={
                    "type": "object",
                    "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
                    "required": ["a", "b"],
                },
                outputSchema={
                    "type": "object",
                    "properties": {"sum": {"type": "number"}},
                    "required": ["sum"],
                },
            ),
            types.Tool(
                name="broken_output",
                inputSchema={"type": "object"},
                outputSchema={"type": "object", "required": ["sum"]},
            ),
            types.Tool(name="explode", inputSchema={"type": "object"}),
            types.Tool(name="chatty", inputSchema={"type": "object"}),
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> Any:
        match name:
            case "add":
                return {"sum": arguments["a"] + arguments["b"]}
            case "broken_output":
                return {"total": 3}
            case "explode":
                raise RuntimeError("kaboom")
            case _:
                session = server.request_context.session
                await session.send_log_message("debug", "noise")
                await session.send_log_message("error", "signal", logger="chatty")
                return [types.TextContent(type="text", text="said things")]

    @server.set_logging_level()
    async def set_logging_level(level: types.LoggingLevel) -> None:
        pass

    return server


def test_capabilities_follow_registered_handlers():
    server = Server(name="caps")

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return []

    @server.subscribe_resource()
    async def on_subscribe(uri: AnyUrl) -> None:
        pass

    capabilities = server.create_initialization_options().capabilities
    assert capabilities.resources is not None
    assert capabilities.resources.subscribe is True
    assert capabilities.resources.listChanged is False
    assert capabilities.tools is None
    assert capabilities.prompts is None
    assert capabilities.logging is None


def test_notification_options_enable_list_changed():
    server = Server(name="caps")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return []

    options = server.create_initialization_options(NotificationOptions(tools_changed=True))
    assert options.capabilities.tools is not None
    assert options.capabilities.tools.listChanged is True
    assert options.server_name == "caps"


@pytest.mark.anyio
async def test_structured_tool_output():
    server = make_tool_server()

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("add", {"a": 1, "b": 2})

    assert not result.isError
    assert result.structuredContent == {"sum": 3}
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    assert '"sum": 3' in content.text


@pytest.mark.anyio
async def test_invalid_input_is_a_tool_error():
    server = make_tool_server()

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("add", {"a": 1})

    assert result.isError
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    assert content.text.startswith("Input validation error")


@pytest.mark.anyio
async def test_output_schema_is_enforced():
    server = make_tool_server()

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("broken_output", {})

    assert result.isError
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    assert content.text.startswith("Output validation error")


@pytest.mark.anyio
async def test_raising_tool_becomes_an_error_result():
    server = make_tool_server()

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("explode", {})

    assert result.isError
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    assert content.text == "kaboom"


@pytest.mark.anyio
async def test_unknown_tool_is_a_protocol_error():
    server = make_tool_server()

    async with create_connected_server_and_client_session(server) as client:
        with pytest.raises(UnknownTarget):
            await client.call_tool("subtract", {"a": 1, "b": 2})


def make_paged_tool_server(pages: list[list[str]]) -> Server:
    server = Server(name="paged-tools")

    @server.list_tools()
    async def list_tools(cursor: str | None) -> types.ListToolsResult:
        index = int(cursor) if cursor else 0
        return types.ListToolsResult(
            tools=[types.Tool(name=name, inputSchema={"type": "object"}) for name in pages[index]],
            nextCursor=str(index + 1) if index + 1 < len(pages) else None,
        )

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        return [types.TextContent(type="text", text=f"ran {name}")]

    return server


@pytest.mark.anyio
async def test_tools_past_the_first_page_are_callable():
    server = make_paged_tool_server([["a", "b"], ["c"]])

    async with create_connected_server_and_client_session(server) as client:
        await client.list_all_tools()
        # Re-reading the first page must not forget "c"
        await client.list_tools()
        result = await client.call_tool("c", {})

    assert not result.isError
    assert result.content[0].text == "ran c"


@pytest.mark.anyio
async def test_unlisted_tool_on_a_later_page_is_found_on_call():
    server = make_paged_tool_server([["a"], ["b"], ["c"]])

    async with create_connected_server_and_client_session(server) as client:
        result = await client.call_tool("c", {})

    assert result.content[0].text == "ran c"


@pytest.mark.anyio
async def test_sessions_keep_separate_tool_caches():
    server = make_paged_tool_server([["a", "b"], ["c"]])

    async with (
        create_connected_server_and_client_session(server) as first,
        create_connected_server_and_client_session(server) as second,
    ):
        await first.list_all_tools()
        await second.list_tools()
        result = await first.call_tool("c", {})
        assert len(server._tool_caches) == 2

    assert result.content[0].text == "ran c"


@pytest.mark.anyio
async def test_undeclared_feature_is_refused_locally():
    server = make_tool_server()

    async with create_connected_server_and_client_session(server) as client:
        with pytest.raises(CapabilityNotDeclared):
            await client.list_prompts()


@pytest.mark.anyio
async def test_log_messages_respect_the_client_threshold():
    server = make_tool_server()
    received: list[types.LoggingMessageNotificationParams] = []
    got_error = anyio.Event()

    async def logging_callback(params: types.LoggingMessageNotificationParams) -> None:
        received.append(params)
        if params.level == "error":
            got_error.set()

    async with create_connected_server_and_client_session(server, logging_callback=logging_callback) as client:
        await client.set_logging_level("warning")
        await client.call_tool("chatty", {})
        with anyio.fail_after(1):
            await got_error.wait()

    assert [(params.level, params.data, params.logger) for params in received] == [("error", "signal", "chatty")]


@pytest.mark.anyio
async def test_list_changed_is_broadcast_to_operational_sessions():
    server = make_tool_server()
    changed = anyio.Event()

    async def on_change(session: ClientSession) -> None:
        changed.set()

    async with create_connected_server_and_client_session(server) as client:
        client.add_list_changed_callback("tools", on_change)
        assert await server.notify_list_changed("tools") == 1
        with anyio.fail_after(1):
            await changed.wait()


@pytest.mark.anyio
async def test_read_resource_wraps_text_and_bytes():
    server = Server(name="files")

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return [
            types.Resource(uri=AnyUrl("file:///notes.txt"), name="notes"),
            types.Resource(uri=AnyUrl("file:///logo.png"), name="logo"),
        ]

    @server.read_resource()
    async def read_resource(uri: AnyUrl) -> str | bytes:
        if str(uri).endswith(".png"):
            return b"\x89PNG"
        return "remember the milk"

    async with create_connected_server_and_client_session(server) as client:
        text = await client.read_resource("file:///notes.txt")
        blob = await client.read_resource("file:///logo.png")

    assert isinstance(text.contents[0], types.TextResourceContents)
    assert text.contents[0].text == "remember the milk"
    assert isinstance(blob.contents[0], types.BlobResourceContents)
    assert blob.contents[0].blob == "iVBORw=="


@pytest.mark.anyio
async def test_lifespan_context_reaches_handlers():
    @asynccontextmanager
    async def lifespan(server: Server[dict[str, str]]) -> AsyncIterator[dict[str, str]]:
        yield {"db": "connected"}

    server: Server[dict[str, str]] = Server(name="with-lifespan", lifespan=lifespan)

    @server.list_prompts()
    async def list_prompts() -> list[types.Prompt]:
        return [types.Prompt(name=server.request_context.lifespan_context["db"])]

    async with create_connected_server_and_client_session(server) as client:
        result = await client.list_prompts()

    assert [prompt.name for prompt in result.prompts] == ["connected"]


@pytest.mark.anyio
async def test_resource_templates_and_instructions():
    server = Server(name="templated", version="1.2.3", instructions="Read the docs first")

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return []

    @server.list_resource_templates()
    async def list_resource_templates() -> list[types.ResourceTemplate]:
        return [types.ResourceTemplate(name="notes", uriTemplate="file:///notes/{name}.txt")]

    async with create_connected_server_and_client_session(server) as client:
        assert client.initialize_result is not None
        assert client.initialize_result.instructions == "Read the docs first"
        assert client.initialize_result.serverInfo.version == "1.2.3"
        result = await client.list_resource_templates()

    assert [template.uriTemplate for template in result.resourceTemplates] == ["file:///notes/{name}.txt"]


@pytest.mark.anyio
async def test_client_notifications_reach_server_handlers():
    server = Server(name="listening")
    progress: list[tuple[str | int, float, float | None, str | None]] = []
    roots_changed = anyio.Event()

    @server.progress_notification()
    async def on_progress(token: str | int, value: float, total: float | None, message: str | None) -> None:
        progress.append((token, value, total, message))

    @server.roots_list_changed()
    async def on_roots_changed() -> None:
        roots_changed.set()

    async def list_roots_callback(context: Any) -> types.ListRootsResult:
        return types.ListRootsResult(roots=[])

    async with create_connected_server_and_client_session(server, list_roots_callback=list_roots_callback) as client:
        await client.send_progress_notification("upload", 0.5, total=1.0, message="halfway")
        await client.send_roots_list_changed()
        with anyio.fail_after(1):
            await roots_changed.wait()

    # Notifications are handled in arrival order
    assert progress == [("upload", 0.5, 1.0, "halfway")]
