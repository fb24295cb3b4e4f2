from collections.abc import AsyncGenerator
from uuid import UUID, uuid4

import anyio
import httpx
import pytest
from anyio.streams.memory import MemoryObjectReceiveStream

from mcp_runtime import types
from mcp_runtime.server.lowlevel.server import Server
from mcp_runtime.server.sse import SseServerTransport, create_sse_app
from mcp_runtime.shared.exceptions import ProtocolViolation
from mcp_runtime.shared.message import ServerMessageMetadata, SessionMessage


@pytest.fixture
def transport() -> SseServerTransport:
    return SseServerTransport("/messages/")


@pytest.fixture
async def client(transport: SseServerTransport) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=transport.handle_post_message),
        base_url="http://testserver",
    ) as client:
        yield client


def register_session(
    transport: SseServerTransport,
) -> tuple[UUID, MemoryObjectReceiveStream[SessionMessage | Exception]]:
    session_id = uuid4()
    writer, reader = anyio.create_memory_object_stream[SessionMessage | Exception](10)
    transport._read_stream_writers[session_id] = writer  # type: ignore[reportPrivateUsage]
    return session_id, reader


@pytest.mark.anyio
async def test_post_requires_session_id(client: httpx.AsyncClient):
    response = await client.post("/messages/", content=b"{}")
    assert response.status_code == 400
    assert response.text == "session_id is required"


@pytest.mark.anyio
async def test_post_rejects_malformed_session_id(client: httpx.AsyncClient):
    response = await client.post("/messages/", params={"session_id": "not-a-uuid"}, content=b"{}")
    assert response.status_code == 400
    assert response.text == "Invalid session ID"


@pytest.mark.anyio
async def test_post_to_unknown_session_is_not_found(client: httpx.AsyncClient):
    response = await client.post("/messages/", params={"session_id": uuid4().hex}, content=b"{}")
    assert response.status_code == 404


@pytest.mark.anyio
async def test_post_delivers_message_to_the_session(transport: SseServerTransport, client: httpx.AsyncClient):
    session_id, reader = register_session(transport)

    response = await client.post(
        "/messages/",
        params={"session_id": session_id.hex},
        content=b'{"jsonrpc": "2.0", "id": 7, "method": "ping"}',
    )

    assert response.status_code == 202
    with anyio.fail_after(1):
        delivered = await reader.receive()
    assert isinstance(delivered, SessionMessage)
    assert isinstance(delivered.message.root, types.JSONRPCRequest)
    assert delivered.message.root.id == 7
    # Handlers can reach the HTTP request that carried the message
    assert isinstance(delivered.metadata, ServerMessageMetadata)
    assert delivered.metadata.request_context is not None


@pytest.mark.anyio
async def test_post_with_unparsable_body(transport: SseServerTransport, client: httpx.AsyncClient):
    session_id, reader = register_session(transport)

    response = await client.post("/messages/", params={"session_id": session_id.hex}, content=b"{not json")

    assert response.status_code == 400
    with anyio.fail_after(1):
        delivered = await reader.receive()
    assert isinstance(delivered, ProtocolViolation)
    assert delivered.error.code == types.PARSE_ERROR


@pytest.mark.anyio
async def test_post_to_a_session_that_stopped_reading(transport: SseServerTransport, client: httpx.AsyncClient):
    session_id, reader = register_session(transport)
    await reader.aclose()

    bad = await client.post("/messages/", params={"session_id": session_id.hex}, content=b"{not json")
    good = await client.post(
        "/messages/",
        params={"session_id": session_id.hex},
        content=b'{"jsonrpc": "2.0", "id": 1, "method": "ping"}',
    )

    assert bad.status_code == 400
    assert good.status_code == 202


def test_sse_app_routes():
    app = create_sse_app(Server(name="web"), sse_path="/events", message_path="/rpc/")
    paths = {getattr(route, "path", None) for route in app.routes}
    assert "/events" in paths
    assert "/rpc" in paths
