"""Message wrapper with metadata support.

This module defines a wrapper type that combines JSONRPCMessage with metadata
that transports may need, such as the HTTP request that carried a message.
"""

from dataclasses import dataclass
from typing import Any

from mcp_runtime.types import JSONRPCMessage, RequestId


@dataclass
class ClientMessageMetadata:
    """Metadata specific to client messages."""

    headers: dict[str, str] | None = None


@dataclass
class ServerMessageMetadata:
    """Metadata specific to server messages."""

    related_request_id: RequestId | None = None
    # Transport-specific request context (e.g. starlette Request for HTTP
    # transports, None for stdio). Typed as Any because the server layer is
    # transport-agnostic.
    request_context: Any = None


MessageMetadata = ClientMessageMetadata | ServerMessageMetadata | None


@dataclass
class SessionMessage:
    """A message with specific metadata for transport-specific features."""

    message: JSONRPCMessage
    metadata: MessageMetadata = None
