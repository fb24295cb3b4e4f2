import json
from typing import Any

import anyio
import httpx
import pytest

from mcp_runtime.client.sse import remove_request_params, sse_client
from mcp_runtime.shared.exceptions import ProtocolViolation
from mcp_runtime.shared.message import SessionMessage
from mcp_runtime.types import JSONRPCMessage, JSONRPCRequest, JSONRPCResponse

EVENTS = (
    "event: endpoint\ndata: /messages/?session_id=abc\n\n"
    'event: message\ndata: {"jsonrpc": "2.0", "id": 1, "result": {}}\n\n'
    "event: message\ndata: not json\n\n"
)


def test_remove_request_params():
    assert remove_request_params("http://localhost:8000/sse?token=secret") == "http://localhost:8000/sse"


@pytest.mark.anyio
async def test_sse_client_reads_events_and_posts_to_the_endpoint():
    posted: list[tuple[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=EVENTS.encode())
        posted.append((str(request.url), json.loads(request.content)))
        return httpx.Response(202)

    def client_factory(
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), headers=headers, timeout=timeout)

    async with sse_client("http://testserver/sse", httpx_client_factory=client_factory) as (read_stream, write_stream):
        with anyio.fail_after(2):
            first = await read_stream.receive()
            second = await read_stream.receive()

            ping = JSONRPCMessage(JSONRPCRequest(jsonrpc="2.0", id=7, method="ping"))
            await write_stream.send(SessionMessage(ping))
            while not posted:
                await anyio.sleep(0.01)

    assert isinstance(first, SessionMessage)
    assert isinstance(first.message.root, JSONRPCResponse)
    # A bad event is reported without ending the stream
    assert isinstance(second, ProtocolViolation)
    assert posted == [
        ("http://testserver/messages/?session_id=abc", {"jsonrpc": "2.0", "id": 7, "method": "ping"}),
    ]
