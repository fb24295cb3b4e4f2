import io

import anyio
import pytest

from mcp_runtime.server.stdio import stdio_server
from mcp_runtime.shared.exceptions import ProtocolViolation
from mcp_runtime.shared.message import SessionMessage
from mcp_runtime.types import PARSE_ERROR, JSONRPCMessage, JSONRPCRequest, JSONRPCResponse


@pytest.mark.anyio
async def test_stdio_server():
    stdin = io.StringIO()
    stdout = io.StringIO()

    messages = [
        JSONRPCMessage(root=JSONRPCRequest(jsonrpc="2.0", id=1, method="ping")),
        JSONRPCMessage(root=JSONRPCResponse(jsonrpc="2.0", id=2, result={})),
    ]

    for message in messages:
        stdin.write(message.model_dump_json(by_alias=True, exclude_none=True) + "\n")
    stdin.seek(0)

    async with stdio_server(stdin=anyio.AsyncFile(stdin), stdout=anyio.AsyncFile(stdout)) as (
        read_stream,
        write_stream,
    ):
        received_messages: list[JSONRPCMessage] = []
        async with read_stream:
            async for message in read_stream:
                if isinstance(message, Exception):
                    raise message
                received_messages.append(message.message)
                if len(received_messages) == 2:
                    break

        assert received_messages == messages

        responses = [
            JSONRPCMessage(root=JSONRPCRequest(jsonrpc="2.0", id=3, method="ping")),
            JSONRPCMessage(root=JSONRPCResponse(jsonrpc="2.0", id=4, result={})),
        ]

        async with write_stream:
            for response in responses:
                await write_stream.send(SessionMessage(response))

    stdout.seek(0)
    output_lines = stdout.readlines()
    assert [JSONRPCMessage.model_validate_json(line.strip()) for line in output_lines] == responses


@pytest.mark.anyio
async def test_stdio_server_reports_bad_lines_and_keeps_reading():
    stdin = io.StringIO('this is not json\n\n{"jsonrpc": "2.0", "id": 5, "method": "ping"}\n')
    stdout = io.StringIO()

    async with stdio_server(stdin=anyio.AsyncFile(stdin), stdout=anyio.AsyncFile(stdout)) as (
        read_stream,
        write_stream,
    ):
        async with read_stream, write_stream:
            with anyio.fail_after(1):
                first = await read_stream.receive()
                second = await read_stream.receive()

    assert isinstance(first, ProtocolViolation)
    assert first.error.code == PARSE_ERROR
    assert isinstance(second, SessionMessage)
    assert second.message == JSONRPCMessage(root=JSONRPCRequest(jsonrpc="2.0", id=5, method="ping"))


@pytest.mark.anyio
async def test_stdio_server_ignores_input_once_the_session_stops_reading():
    stdin = io.StringIO("".join(f'{{"jsonrpc": "2.0", "id": {i}, "method": "ping"}}\n' for i in range(3)))
    stdout = io.StringIO()

    async with stdio_server(stdin=anyio.AsyncFile(stdin), stdout=anyio.AsyncFile(stdout)) as (
        read_stream,
        write_stream,
    ):
        async with write_stream:
            with anyio.fail_after(1):
                first = await read_stream.receive()
            await read_stream.aclose()

    # Leaving the context did not raise even though two frames were still queued
    assert isinstance(first, SessionMessage)
    assert first.message == JSONRPCMessage(root=JSONRPCRequest(jsonrpc="2.0", id=0, method="ping"))
