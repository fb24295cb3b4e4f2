"""A session runtime for a bidirectional, capability-negotiated RPC protocol.

Use mcp_runtime to:

- Serve tools, resources and prompts over stdio or SSE
- Connect to one server with a ClientSession, or to many through a SessionRouter
- Answer server-initiated sampling, elicitation and roots requests under a host policy

## Example - a server

```python
import anyio
from mcp_runtime import types
from mcp_runtime.server import Server
from mcp_runtime.server.stdio import stdio_server

server = Server("demo")

@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [types.Tool(name="add", inputSchema={"type": "object"})]

@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=str(arguments["a"] + arguments["b"]))]

async def main():
    async with stdio_server() as (read, write):
        await server.run(read, write, server.create_initialization_options())

anyio.run(main)
```

## Example - a client

```python
from mcp_runtime import ClientSession, StdioServerParameters, stdio_client

server_params = StdioServerParameters(command="python", args=["server.py"])

async with stdio_client(server_params) as (read, write):
    async with ClientSession(read, write) as session:
        await session.initialize()
        result = await session.call_tool("add", {"a": 5, "b": 3})
```
"""

from .client.router import CollisionPolicy, SessionRouter
from .client.session import ClientSession
from .client.stdio import StdioServerParameters, stdio_client
from .server.session import ServerSession
from .server.stdio import stdio_server
from .settings import RuntimeSettings
from .shared.bridge import BridgePolicy, BridgeRejection, RetryPolicy
from .shared.exceptions import (
    CapabilityNotDeclared,
    IncompatibleVersion,
    McpError,
    NotInitialized,
    ProtocolViolation,
    RequestCancelled,
    RequestTimeout,
    SessionClosing,
    TransportFailure,
    UnknownTarget,
)
from .shared.session import SessionPhase
from .types import (
    CallToolResult,
    ClientCapabilities,
    ErrorData,
    Implementation,
    InitializeResult,
    Prompt,
    Resource,
    ServerCapabilities,
    Tool,
)

__all__ = [
    "BridgePolicy",
    "BridgeRejection",
    "CallToolResult",
    "CapabilityNotDeclared",
    "ClientCapabilities",
    "ClientSession",
    "CollisionPolicy",
    "ErrorData",
    "Implementation",
    "IncompatibleVersion",
    "InitializeResult",
    "McpError",
    "NotInitialized",
    "Prompt",
    "ProtocolViolation",
    "RequestCancelled",
    "RequestTimeout",
    "Resource",
    "RetryPolicy",
    "RuntimeSettings",
    "ServerCapabilities",
    "ServerSession",
    "SessionClosing",
    "SessionPhase",
    "SessionRouter",
    "StdioServerParameters",
    "Tool",
    "TransportFailure",
    "UnknownTarget",
    "stdio_client",
    "stdio_server",
]
