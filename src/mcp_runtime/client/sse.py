import logging
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urljoin, urlparse

import anyio
import httpx
from anyio.abc import TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from httpx_sse import aconnect_sse
from pydantic import BaseModel, Field

from mcp_runtime.shared._httpx_utils import McpHttpClientFactory, create_mcp_http_client
from mcp_runtime.shared.codec import decode_message, dump_params
from mcp_runtime.shared.exceptions import ProtocolViolation, TransportFailure
from mcp_runtime.shared.message import SessionMessage

logger = logging.getLogger(__name__)


class SseServerParameters(BaseModel):
    url: str
    """The SSE endpoint to connect to."""

    headers: dict[str, Any] | None = None
    """Extra HTTP headers sent with the stream request and every POST."""

    timeout: float = 5
    """HTTP timeout for everything except waiting on the event stream."""

    sse_read_timeout: float = Field(default=60 * 5)
    """How long to wait for a new event before giving up on the stream."""


def remove_request_params(url: str) -> str:
    return urljoin(url, urlparse(url).path)


@asynccontextmanager
async def sse_client(
    url: str,
    headers: dict[str, Any] | None = None,
    timeout: float = 5,
    sse_read_timeout: float = 60 * 5,
    httpx_client_factory: McpHttpClientFactory = create_mcp_http_client,
):
    """
    Client transport for SSE.

    `sse_read_timeout` determines how long (in seconds) the client will wait for a new
    event before disconnecting. All other HTTP operations are controlled by `timeout`.

    A dropped stream or a rejected POST is delivered to the session as a
    TransportFailure, which ends the session and fails its pending requests.

    Args:
        url: SSE endpoint URL
        headers: Optional HTTP headers
        timeout: HTTP request timeout in seconds
        sse_read_timeout: SSE read timeout in seconds
    """
    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]

    write_stream: MemoryObjectSendStream[SessionMessage]
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    async with anyio.create_task_group() as tg:
        try:
            logger.info("Connecting to SSE endpoint: %s", remove_request_params(url))
            async with httpx_client_factory(headers=headers, timeout=httpx.Timeout(timeout, read=sse_read_timeout)) as client:
                async with aconnect_sse(client, "GET", url) as event_source:
                    event_source.response.raise_for_status()
                    logger.debug("SSE connection established")

                    async def sse_reader(
                        task_status: TaskStatus[str] = anyio.TASK_STATUS_IGNORED,
                    ):
                        try:
                            async for sse in event_source.aiter_sse():
                                logger.debug("Received SSE event: %s", sse.event)
                                match sse.event:
                                    case "endpoint":
                                        endpoint_url = urljoin(url, sse.data)
                                        logger.info("Received endpoint URL: %s", endpoint_url)

                                        url_parsed = urlparse(url)
                                        endpoint_parsed = urlparse(endpoint_url)
                                        if (
                                            url_parsed.netloc != endpoint_parsed.netloc
                                            or url_parsed.scheme != endpoint_parsed.scheme
                                        ):
                                            error_msg = f"Endpoint origin does not match connection origin: {endpoint_url}"
                                            logger.error(error_msg)
                                            raise ValueError(error_msg)

                                        task_status.started(endpoint_url)

                                    case "message":
                                        try:
                                            message = decode_message(sse.data)
                                        except ProtocolViolation as exc:
                                            logger.error("Error parsing server message: %s", exc)
                                            await read_stream_writer.send(exc)
                                            continue

                                        await read_stream_writer.send(SessionMessage(message))
                                    case _:
                                        logger.warning("Unknown SSE event: %s", sse.event)
                        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                            # The session stopped reading; later events are dropped
                            logger.debug("Read stream closed, discarding further SSE events")
                        except (httpx.HTTPError, anyio.EndOfStream) as exc:
                            logger.error("SSE stream failed: %s", exc)
                            try:
                                await read_stream_writer.send(TransportFailure(f"SSE stream failed: {exc}"))
                            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                                pass
                        finally:
                            await read_stream_writer.aclose()

                    async def post_writer(endpoint_url: str):
                        try:
                            async with write_stream_reader:
                                async for session_message in write_stream_reader:
                                    logger.debug("Sending client message: %s", session_message)
                                    response = await client.post(
                                        endpoint_url,
                                        json=dump_params(session_message.message),
                                    )
                                    response.raise_for_status()
                                    logger.debug("Client message sent successfully: %d", response.status_code)
                        except httpx.HTTPError as exc:
                            logger.error("Error in post_writer: %s", exc)
                            try:
                                await read_stream_writer.send(TransportFailure(f"POST to {endpoint_url} failed: {exc}"))
                            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                                pass
                        finally:
                            await write_stream.aclose()

                    endpoint_url = await tg.start(sse_reader)
                    logger.info("Starting post writer with endpoint URL: %s", endpoint_url)
                    tg.start_soon(post_writer, endpoint_url)

                    try:
                        yield read_stream, write_stream
                    finally:
                        tg.cancel_scope.cancel()
        finally:
            await read_stream_writer.aclose()
            await write_stream.aclose()
