"""
Types shared by the server implementation and its transports.
"""

from pydantic import BaseModel

from mcp_runtime.types import ServerCapabilities


class InitializationOptions(BaseModel):
    server_name: str
    server_version: str
    capabilities: ServerCapabilities
    instructions: str | None = None
