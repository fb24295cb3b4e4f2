"""Stdio Server Transport Module

Serves one session over the current process' stdin and stdout, one JSON-RPC
frame per line. Stdout carries protocol frames only; diagnostics belong on
stderr (see `mcp_runtime.shared.logging.configure_logging`).

Example:
    ```python
    async def run_server():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())

    anyio.run(run_server)
    ```

or simply `anyio.run(server.run_stdio)`.
"""

import logging
import sys
from collections.abc import AsyncIterable
from contextlib import asynccontextmanager
from io import TextIOWrapper
from typing import BinaryIO

import anyio
import anyio.lowlevel
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcp_runtime.shared.codec import decode_message, encode_message
from mcp_runtime.shared.exceptions import ProtocolViolation
from mcp_runtime.shared.message import SessionMessage

logger = logging.getLogger(__name__)


class _NonClosingTextIOWrapper(TextIOWrapper):
    """Text wrapper that leaves the process' real stdio handles open on close."""

    def close(self) -> None:
        if self.closed:
            return

        if self.writable():
            self.flush()


def _wrap_process_stdio(binary_stream: BinaryIO, encoding: str) -> anyio.AsyncFile[str]:
    return anyio.wrap_file(_NonClosingTextIOWrapper(binary_stream, encoding=encoding))


async def _pump_frames_in(
    lines: AsyncIterable[str],
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception],
) -> None:
    """Decode incoming lines until EOF or until the session stops reading.

    Unparsable lines are forwarded as ProtocolViolation so the session can
    answer them; blank lines are skipped.
    """
    received = 0
    try:
        async with read_stream_writer:
            async for line in lines:
                if not line.strip():
                    continue
                item: SessionMessage | Exception
                try:
                    item = SessionMessage(decode_message(line))
                except ProtocolViolation as exc:
                    logger.warning("Unparsable line on stdin: %s", exc)
                    item = exc
                await read_stream_writer.send(item)
                received += 1
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        logger.debug("Session stopped reading after %d frames; ignoring the rest of stdin", received)
        await anyio.lowlevel.checkpoint()
    else:
        logger.debug("stdin reached EOF after %d frames", received)


async def _pump_frames_out(
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage],
    stdout: anyio.AsyncFile[str],
) -> None:
    """Write each outgoing message as one line, flushing after every frame."""
    try:
        async with write_stream_reader:
            async for session_message in write_stream_reader:
                await stdout.write(encode_message(session_message.message) + "\n")
                await stdout.flush()
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        await anyio.lowlevel.checkpoint()
    except BrokenPipeError:
        # The client closed our stdout; the session notices through its own streams
        logger.debug("stdout closed by the client")


@asynccontextmanager
async def stdio_server(
    stdin: anyio.AsyncFile[str] | None = None,
    stdout: anyio.AsyncFile[str] | None = None,
    encoding: str = "utf-8",
):
    """Server transport for stdio.

    `stdin` and `stdout` default to the process' own handles, re-wrapped with
    `encoding` since the platform default is not reliably UTF-8. The real
    handles are never closed.
    """
    if not stdin:
        stdin = _wrap_process_stdio(sys.stdin.buffer, encoding)
    if not stdout:
        stdout = _wrap_process_stdio(sys.stdout.buffer, encoding)

    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]

    write_stream: MemoryObjectSendStream[SessionMessage]
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    async with anyio.create_task_group() as tg:
        tg.start_soon(_pump_frames_in, stdin, read_stream_writer)
        tg.start_soon(_pump_frames_out, write_stream_reader, stdout)
        yield read_stream, write_stream
