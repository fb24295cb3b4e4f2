import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal

import anyio
import anyio.lowlevel
from anyio.abc import Process
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from anyio.streams.text import TextReceiveStream
from pydantic import BaseModel, Field

from mcp_runtime.shared.codec import LineBuffer, decode_message, encode_message
from mcp_runtime.shared.exceptions import ProtocolViolation
from mcp_runtime.shared.message import SessionMessage

logger = logging.getLogger(__name__)

# Environment variables to inherit by default
DEFAULT_INHERITED_ENV_VARS = (
    [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
    if sys.platform == "win32"
    else ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]
)

# Timeout for process termination before falling back to force kill
PROCESS_TERMINATION_TIMEOUT = 2.0


def get_default_environment() -> dict[str, str]:
    """Returns a default environment object including only environment variables deemed
    safe to inherit.
    """
    env: dict[str, str] = {}

    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is None:
            continue

        if value.startswith("()"):
            # Skip functions, which are a security risk
            continue

        env[key] = value

    return env


class StdioServerParameters(BaseModel):
    command: str
    """The executable to run to start the server."""

    args: list[str] = Field(default_factory=list)
    """Command line arguments to pass to the executable."""

    env: dict[str, str] | None = None
    """
    The environment to use when spawning the process.

    If not specified, the result of get_default_environment() will be used.
    """

    cwd: str | Path | None = None
    """The working directory to use when spawning the process."""

    encoding: str = "utf-8"
    """
    The text encoding used when sending/receiving messages to the server

    defaults to utf-8
    """

    encoding_error_handler: Literal["strict", "ignore", "replace"] = "strict"
    """
    The text encoding error handler.

    See https://docs.python.org/3/library/codecs.html#codec-base-classes for
    explanations of possible values
    """


@asynccontextmanager
async def stdio_client(server: StdioServerParameters, stderr_logger: logging.Logger | None = None):
    """Client transport for stdio: this will connect to a server by spawning a
    process and communicating with it over stdin/stdout.

    The child's stderr is diagnostic output only. It is read line by line and
    written to `stderr_logger` (a child of this module's logger by default),
    never mixed into the protocol stream.
    """
    read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
    read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception]

    write_stream: MemoryObjectSendStream[SessionMessage]
    write_stream_reader: MemoryObjectReceiveStream[SessionMessage]

    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    errlog = stderr_logger or logger.getChild(Path(server.command).name)

    try:
        process = await anyio.open_process(
            [server.command, *server.args],
            env=({**get_default_environment(), **server.env} if server.env is not None else get_default_environment()),
            cwd=server.cwd,
            stderr=subprocess.PIPE,
        )
    except OSError:
        # Clean up streams if process creation fails
        await read_stream.aclose()
        await write_stream.aclose()
        await read_stream_writer.aclose()
        await write_stream_reader.aclose()
        raise

    async def stdout_reader():
        assert process.stdout, "Opened process is missing stdout"

        try:
            async with read_stream_writer:
                lines = LineBuffer()
                async for chunk in TextReceiveStream(
                    process.stdout,
                    encoding=server.encoding,
                    errors=server.encoding_error_handler,
                ):
                    for line in lines.feed(chunk):
                        try:
                            message = decode_message(line)
                        except ProtocolViolation as exc:
                            logger.exception("Failed to parse JSON-RPC message from server")
                            await read_stream_writer.send(exc)
                            continue

                        await read_stream_writer.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            # The session stopped reading; whatever the child still writes is dropped
            logger.debug("Read stream closed, discarding further output from %s", server.command)
            await anyio.lowlevel.checkpoint()

    async def stdin_writer():
        assert process.stdin, "Opened process is missing stdin"

        try:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    json = encode_message(session_message.message)
                    await process.stdin.send(
                        (json + "\n").encode(
                            encoding=server.encoding,
                            errors=server.encoding_error_handler,
                        )
                    )
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            await anyio.lowlevel.checkpoint()

    async def stderr_reader():
        if not process.stderr:
            return

        try:
            lines = LineBuffer()
            async for chunk in TextReceiveStream(process.stderr, encoding=server.encoding, errors="replace"):
                for line in lines.feed(chunk):
                    errlog.info(line)
            if lines.pending.strip():
                errlog.info(lines.pending)
        except anyio.ClosedResourceError:
            await anyio.lowlevel.checkpoint()

    async with anyio.create_task_group() as tg, process:
        tg.start_soon(stdout_reader)
        tg.start_soon(stdin_writer)
        tg.start_soon(stderr_reader)
        try:
            yield read_stream, write_stream
        finally:
            # Shutdown sequence:
            # 1. Close input stream to server
            # 2. Wait for server to exit, or terminate it if it doesn't exit in time
            # 3. Kill it if it still has not exited
            if process.stdin:
                try:
                    await process.stdin.aclose()
                except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                    pass

            try:
                # Give the process time to exit gracefully after stdin closes
                with anyio.fail_after(PROCESS_TERMINATION_TIMEOUT):
                    await process.wait()
            except TimeoutError:
                await _terminate_process(process)
            except ProcessLookupError:
                # Process already exited, which is fine
                pass
            await read_stream.aclose()
            await write_stream.aclose()
            await read_stream_writer.aclose()
            await write_stream_reader.aclose()
            tg.cancel_scope.cancel()


async def _terminate_process(process: Process, timeout_seconds: float = PROCESS_TERMINATION_TIMEOUT) -> None:
    """Send SIGTERM, then SIGKILL if the process is still running after `timeout_seconds`."""
    try:
        process.terminate()
        with anyio.fail_after(timeout_seconds):
            await process.wait()
    except TimeoutError:
        logger.warning("Process %s did not terminate in time, killing it", process.pid)
        process.kill()
        await process.wait()
    except ProcessLookupError:
        pass
