"""
In-memory transports, handy for tests and for embedding a server in-process.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcp_runtime.client.session import ClientSession
from mcp_runtime.server.lowlevel.server import Server
from mcp_runtime.shared.bridge import DEFAULT_BRIDGE_TIMEOUT, RetryPolicy
from mcp_runtime.shared.message import SessionMessage

MessageStream = tuple[
    MemoryObjectReceiveStream[SessionMessage | Exception],
    MemoryObjectSendStream[SessionMessage],
]


@asynccontextmanager
async def create_client_server_memory_streams() -> AsyncGenerator[tuple[MessageStream, MessageStream], None]:
    """
    Creates a pair of bidirectional memory streams for client-server communication.

    Returns:
        A tuple of (client_streams, server_streams) where each is a tuple of
        (read_stream, write_stream)
    """
    # Create streams for both directions
    server_to_client_send, server_to_client_receive = anyio.create_memory_object_stream[SessionMessage | Exception](1)
    client_to_server_send, client_to_server_receive = anyio.create_memory_object_stream[SessionMessage | Exception](1)

    client_streams = (server_to_client_receive, client_to_server_send)
    server_streams = (client_to_server_receive, server_to_client_send)

    async with (
        server_to_client_receive,
        client_to_server_send,
        client_to_server_receive,
        server_to_client_send,
    ):
        yield client_streams, server_streams


@asynccontextmanager
async def create_connected_server_and_client_session(
    server: Server,
    *,
    initialize: bool = True,
    bridge_timeout: timedelta = DEFAULT_BRIDGE_TIMEOUT,
    bridge_retry: RetryPolicy | None = None,
    **client_kwargs: Any,
) -> AsyncGenerator[ClientSession, None]:
    """Creates a ClientSession that is connected to `server` running in the background.

    Extra keyword arguments are passed to ClientSession. With `initialize`
    left on, the handshake has completed by the time the session is yielded.
    """
    async with create_client_server_memory_streams() as (client_streams, server_streams):
        client_read, client_write = client_streams
        server_read, server_write = server_streams

        async with anyio.create_task_group() as tg:
            tg.start_soon(
                lambda: server.run(
                    server_read,
                    server_write,
                    server.create_initialization_options(),
                    bridge_timeout=bridge_timeout,
                    bridge_retry=bridge_retry,
                )
            )

            try:
                async with ClientSession(client_read, client_write, **client_kwargs) as client_session:
                    if initialize:
                        await client_session.initialize()
                    yield client_session
            finally:
                tg.cancel_scope.cancel()
