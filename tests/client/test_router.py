import os
import sys
from collections.abc import Callable, Sequence
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, cast

import anyio
import pytest

from mcp_runtime import types
from mcp_runtime.client.router import CollisionPolicy, SessionRouter, build_routing_table
from mcp_runtime.client.session import ClientSession
from mcp_runtime.client.stdio import StdioServerParameters
from mcp_runtime.server.lowlevel.server import Server
from mcp_runtime.shared.exceptions import ProtocolViolation, UnknownTarget
from mcp_runtime.shared.memory import create_connected_server_and_client_session

CatalogServerFactory = Callable[..., Server]


def tool(name: str) -> types.Tool:
    return types.Tool(name=name, inputSchema={"type": "object"})


def fake_session(label: str) -> ClientSession:
    return cast(ClientSession, label)


def catalogs() -> list[tuple[str, ClientSession, Sequence[types.Tool]]]:
    return [
        ("A", fake_session("a"), [tool("search"), tool("read")]),
        ("B", fake_session("b"), [tool("search"), tool("write")]),
    ]


def text_of(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


def test_namespace_policy_qualifies_only_colliding_names():
    table = build_routing_table(catalogs(), CollisionPolicy.NAMESPACE)

    assert set(table.exposed) == {"A.search", "B.search", "read", "write"}
    assert table.resolve("A.search").session == fake_session("a")
    assert table.resolve("B.search").original_name == "search"
    with pytest.raises(UnknownTarget):
        table.resolve("search")


def test_priority_policy_lets_the_first_server_win():
    table = build_routing_table(catalogs(), CollisionPolicy.PRIORITY)

    assert set(table.exposed) == {"search", "read", "write"}
    assert table.resolve("search").server == "A"
    # The loser is still reachable by its qualified name
    assert table.resolve("B.search").server == "B"


def test_reject_policy_withholds_colliding_names():
    table = build_routing_table(catalogs(), CollisionPolicy.REJECT)

    assert set(table.exposed) == {"read", "write"}
    assert table.withheld == frozenset({"search"})
    with pytest.raises(UnknownTarget, match="ambiguous"):
        table.resolve("search")
    assert table.resolve("A.search").server == "A"


def test_unique_names_are_always_exposed_bare():
    for policy in CollisionPolicy:
        table = build_routing_table(catalogs(), policy)
        assert table.resolve("read").server == "A"
        assert table.resolve("write").server == "B"
        assert table.resolve("A.read").server == "A"


def test_custom_separator():
    table = build_routing_table(catalogs(), CollisionPolicy.NAMESPACE, separator="__")
    assert "A__search" in table.exposed


def test_routing_tables_are_read_only():
    table = build_routing_table(catalogs(), CollisionPolicy.NAMESPACE)
    with pytest.raises(TypeError):
        table.exposed["sneaky"] = table.exposed["read"]  # type: ignore[index]


def test_policy_accepts_its_string_value():
    assert SessionRouter(policy="reject").policy is CollisionPolicy.REJECT
    with pytest.raises(ValueError):
        SessionRouter(separator="")


@pytest.mark.anyio
async def test_calls_are_routed_to_the_owning_server(catalog_server_factory: CatalogServerFactory):
    server_a = catalog_server_factory("A", tools=["search", "read"], prompts=["greet"])
    server_b = catalog_server_factory("B", tools=["search", "write"], resources=["file:///b/notes.txt"])
    router = SessionRouter()

    async with (
        create_connected_server_and_client_session(server_a) as session_a,
        create_connected_server_and_client_session(server_b) as session_b,
    ):
        assert await router.add_session(session_a) == "A"
        assert await router.add_session(session_b) == "B"
        assert list(router.sessions) == ["A", "B"]

        assert set(router.tools) == {"A.search", "B.search", "read", "write"}
        assert router.tools["A.search"].name == "A.search"

        assert text_of(await router.call_tool("A.search", {})) == "A:search"
        assert text_of(await router.call_tool("B.search", {})) == "B:search"
        assert text_of(await router.call_tool("write", {})) == "B:write"

        prompt = await router.get_prompt("greet")
        assert isinstance(prompt.messages[0].content, types.TextContent)
        assert prompt.messages[0].content.text == "A:greet"

        contents = await router.read_resource("file:///b/notes.txt")
        assert isinstance(contents.contents[0], types.TextResourceContents)
        assert contents.contents[0].text == "B:file:///b/notes.txt"

        with pytest.raises(UnknownTarget):
            await router.call_tool("search", {})
        with pytest.raises(UnknownTarget):
            await router.call_tool("delete", {})


@pytest.mark.anyio
async def test_priority_routes_bare_name_to_first_server(catalog_server_factory: CatalogServerFactory):
    server_a = catalog_server_factory("A", tools=["search"])
    server_b = catalog_server_factory("B", tools=["search"])
    router = SessionRouter(policy=CollisionPolicy.PRIORITY)

    async with (
        create_connected_server_and_client_session(server_a) as session_a,
        create_connected_server_and_client_session(server_b) as session_b,
    ):
        await router.add_session(session_a)
        await router.add_session(session_b)

        assert text_of(await router.call_tool("search", {})) == "A:search"
        assert text_of(await router.call_tool("B.search", {})) == "B:search"


@pytest.mark.anyio
async def test_closed_session_leaves_the_catalog(catalog_server_factory: CatalogServerFactory):
    server_a = catalog_server_factory("A", tools=["search"])
    server_b = catalog_server_factory("B", tools=["search"])
    router = SessionRouter(policy=CollisionPolicy.REJECT)

    async with create_connected_server_and_client_session(server_b) as session_b:
        async with AsyncExitStack() as stack:
            session_a = await stack.enter_async_context(create_connected_server_and_client_session(server_a))
            await router.add_session(session_a)
            await router.add_session(session_b)
            assert "search" not in router.tools

        # The collision is gone with A
        assert list(router.sessions) == ["B"]
        assert text_of(await router.call_tool("search", {})) == "B:search"
        with pytest.raises(UnknownTarget):
            router.resolve_tool("A.search")


@pytest.mark.anyio
async def test_add_session_validation(catalog_server_factory: CatalogServerFactory):
    server = catalog_server_factory("A", tools=["search"])
    router = SessionRouter()

    async with create_connected_server_and_client_session(server, initialize=False) as session:
        with pytest.raises(ProtocolViolation):
            await router.add_session(session)

        await session.initialize()
        with pytest.raises(ValueError, match="separator"):
            await router.add_session(session, name="a.b")

        await router.add_session(session)
        with pytest.raises(ValueError, match="already connected"):
            await router.add_session(session)


@pytest.mark.anyio
async def test_disconnect_stops_routing_but_keeps_added_sessions_open(catalog_server_factory: CatalogServerFactory):
    server = catalog_server_factory("A", tools=["search"])
    router = SessionRouter()

    async with create_connected_server_and_client_session(server) as session:
        await router.add_session(session, name="primary")
        assert router.resolve_tool("search").server == "primary"

        await router.disconnect("primary")
        assert router.tools == {}
        assert session.is_operational

        with pytest.raises(UnknownTarget):
            await router.disconnect("primary")


def make_changing_server(names: list[str]) -> Server:
    server = Server(name="C")

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [tool(name) for name in names]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        return [types.TextContent(type="text", text=f"C:{name}")]

    return server


@pytest.mark.anyio
async def test_list_changed_triggers_a_refresh():
    names = ["old"]
    server = make_changing_server(names)
    router = SessionRouter()

    async with create_connected_server_and_client_session(server) as session:
        await router.add_session(session)
        stale = router.resolve_tool("old")

        names[:] = ["new"]
        await server.notify_list_changed("tools")

        with anyio.fail_after(2):
            while "new" not in router.tools:
                await anyio.sleep(0.01)

        assert "old" not in router.tools
        # A route resolved before the rebuild still describes the old snapshot
        assert stale.item.name == "old"


@pytest.mark.anyio
async def test_change_announced_during_the_first_listing_is_picked_up():
    server = Server(name="C")
    listings = 0

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        nonlocal listings
        listings += 1
        if listings == 1:
            await server.notify_list_changed("tools")
            # Let the notification land before this listing is answered
            await anyio.sleep(0.05)
            return [tool("old")]
        return [tool("new")]

    router = SessionRouter()
    async with create_connected_server_and_client_session(server) as session:
        await router.add_session(session)

        with anyio.fail_after(2):
            while "new" not in router.tools:
                await anyio.sleep(0.01)

        assert "old" not in router.tools


@pytest.mark.anyio
async def test_explicit_refresh():
    names = ["first"]
    server = make_changing_server(names)
    router = SessionRouter()

    async with create_connected_server_and_client_session(server) as session:
        await router.add_session(session)
        names.append("second")

        await router.refresh("C")
        assert set(router.tools) == {"first", "second"}
        assert text_of(await router.call_tool("second", {})) == "C:second"

        with pytest.raises(UnknownTarget):
            await router.refresh("missing")


@pytest.mark.anyio
async def test_catalog_copies_do_not_leak_into_the_router(catalog_server_factory: CatalogServerFactory):
    server = catalog_server_factory("A", tools=["search"])
    router = SessionRouter()

    async with create_connected_server_and_client_session(server) as session:
        await router.add_session(session)
        router.tools.clear()
        assert "search" in router.tools


@pytest.mark.anyio
async def test_connect_requires_an_entered_router():
    router = SessionRouter()
    with pytest.raises(RuntimeError):
        await router.connect_to_server("files", StdioServerParameters(command="files-server"))


@pytest.mark.anyio
async def test_entering_and_leaving_an_empty_router():
    async with SessionRouter() as router:
        assert router.sessions == {}
        assert router.tools == {}


@pytest.mark.anyio
async def test_losing_one_server_leaves_calls_to_another_untouched(catalog_server_factory: CatalogServerFactory):
    release = anyio.Event()
    started = anyio.Event()
    server_a = Server(name="A")

    @server_a.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [tool("wait")]

    @server_a.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        started.set()
        await release.wait()
        return [types.TextContent(type="text", text="A:done")]

    server_b = catalog_server_factory("B", tools=["search"])
    router = SessionRouter()
    results: list[str] = []

    async def call_a() -> None:
        results.append(text_of(await router.call_tool("wait", {})))

    async with create_connected_server_and_client_session(server_a) as session_a:
        await router.add_session(session_a)
        async with anyio.create_task_group() as tg:
            async with create_connected_server_and_client_session(server_b) as session_b:
                await router.add_session(session_b)
                tg.start_soon(call_a)
                with anyio.fail_after(1):
                    await started.wait()

            # B is gone while A's call is still in flight
            assert list(router.sessions) == ["A"]
            assert session_a.pending_requests == 1
            release.set()

    assert results == ["A:done"]


CHATTY_SERVER = """
import sys
from contextlib import asynccontextmanager

import anyio

from mcp_runtime import types
from mcp_runtime.server.lowlevel import Server
from mcp_runtime.shared.exceptions import McpError

NAME = sys.argv[1]


@asynccontextmanager
async def lifespan(server):
    async def chatter():
        while True:
            await anyio.sleep(0.02)
            for session in server.sessions:
                if session.is_operational:
                    try:
                        await session.send_log_message("info", f"{NAME} is still here")
                    except McpError:
                        pass

    async with anyio.create_task_group() as tg:
        tg.start_soon(chatter)
        yield {}
        tg.cancel_scope.cancel()


server = Server(NAME, lifespan=lifespan)


@server.set_logging_level()
async def set_logging_level(level):
    pass


@server.list_tools()
async def list_tools():
    return [types.Tool(name=f"{NAME}_tool", inputSchema={"type": "object"})]


@server.call_tool()
async def call_tool(name, arguments):
    return [types.TextContent(type="text", text=f"ok:{NAME}")]


anyio.run(server.run_stdio)
"""


@pytest.mark.anyio
async def test_closing_one_stdio_session_leaves_the_other_routable(tmp_path: Path):
    script = tmp_path / "chatty_server.py"
    script.write_text(CHATTY_SERVER)

    def parameters(name: str) -> StdioServerParameters:
        return StdioServerParameters(
            command=sys.executable,
            args=[str(script), name],
            env={"PYTHONPATH": os.pathsep.join(sys.path)},
        )

    async with SessionRouter() as router:
        with anyio.fail_after(20):
            await router.connect_to_server("a", parameters("a"))
            session_b = await router.connect_to_server("b", parameters("b"))

            await session_b.aclose()
            assert list(router.sessions) == ["a"]

            # b keeps writing into a transport nobody reads any more
            await anyio.sleep(0.3)
            result = await router.call_tool("a_tool", {})

        assert text_of(result) == "ok:a"
