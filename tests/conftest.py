from collections.abc import Sequence
from typing import Any

import anyio
import pytest
import sse_starlette
from packaging import version
from pydantic import AnyUrl

from mcp_runtime import types
from mcp_runtime.server.lowlevel.server import Server

SSE_STARLETTE_VERSION = version.parse(sse_starlette.__version__)
NEEDS_RESET = SSE_STARLETTE_VERSION < version.parse("3.0.0")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """Reset sse-starlette's global AppStatus singleton before each test.

    Versions before 3.0 keep a module-level event bound to the first event
    loop that touched it; later tests would fail with "bound to a different
    event loop".
    """
    if not NEEDS_RESET:
        yield
        return

    # lazy import to avoid import errors
    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]

    yield

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]


def make_catalog_server(
    name: str,
    tools: Sequence[str] = (),
    resources: Sequence[str] = (),
    prompts: Sequence[str] = (),
) -> Server:
    """A server whose tools echo back which server answered."""
    server = Server(name)

    if tools:

        @server.list_tools()
        async def list_tools() -> list[types.Tool]:
            return [types.Tool(name=tool, inputSchema={"type": "object"}) for tool in tools]

        @server.call_tool()
        async def call_tool(tool: str, arguments: dict[str, Any]) -> list[types.TextContent]:
            return [types.TextContent(type="text", text=f"{name}:{tool}")]

    if resources:

        @server.list_resources()
        async def list_resources() -> list[types.Resource]:
            return [types.Resource(uri=AnyUrl(uri), name=uri.rsplit("/", 1)[-1]) for uri in resources]

        @server.read_resource()
        async def read_resource(uri: AnyUrl) -> str:
            return f"{name}:{uri}"

    if prompts:

        @server.list_prompts()
        async def list_prompts() -> list[types.Prompt]:
            return [types.Prompt(name=prompt) for prompt in prompts]

        @server.get_prompt()
        async def get_prompt(prompt: str, arguments: dict[str, str] | None) -> types.GetPromptResult:
            return types.GetPromptResult(
                messages=[
                    types.PromptMessage(role="user", content=types.TextContent(type="text", text=f"{name}:{prompt}"))
                ]
            )

    return server


@pytest.fixture
def catalog_server_factory():
    return make_catalog_server
