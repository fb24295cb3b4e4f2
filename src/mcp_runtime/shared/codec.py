"""
Message codec.

Builds and parses the JSON-RPC envelopes that travel over a transport, and
classifies parsed messages into the three protocol kinds (request,
response/error, notification). Transports use `decode_message` and
`encode_message` for framing; sessions use the builders below so that every
outgoing message is serialised the same way.
"""

import json
from typing import Any

from pydantic import BaseModel, ValidationError

from mcp_runtime.shared.exceptions import ProtocolViolation
from mcp_runtime.types import (
    JSONRPC_VERSION,
    PARSE_ERROR,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ProgressToken,
    RequestId,
    jsonrpc_message_adapter,
)


def decode_message(data: str | bytes) -> JSONRPCMessage:
    """Parse one frame into a JSONRPCMessage.

    Raises:
        ProtocolViolation: if the frame is not valid JSON or not a JSON-RPC message
    """
    try:
        return jsonrpc_message_adapter.validate_json(data)
    except ValidationError as exc:
        violation = ProtocolViolation(
            ErrorData(code=PARSE_ERROR, message="Malformed JSON-RPC message", data=str(exc))
        )
        violation.request_id = _request_id_of(data)
        raise violation from exc


def _request_id_of(data: str | bytes) -> RequestId | None:
    """Recover the id of a frame that looks like a request but failed validation."""
    try:
        raw = json.loads(data)
    except ValueError:
        return None
    if not isinstance(raw, dict) or "method" not in raw:
        return None
    request_id = raw.get("id")
    if isinstance(request_id, str) or (isinstance(request_id, int) and not isinstance(request_id, bool)):
        return request_id
    return None


def encode_message(message: JSONRPCMessage) -> str:
    return message.model_dump_json(by_alias=True, exclude_none=True)


def dump_params(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json", exclude_none=True)


def request_message(
    request_id: RequestId,
    request: BaseModel,
    progress_token: ProgressToken | None = None,
) -> JSONRPCMessage:
    """Wrap a typed request in a JSON-RPC envelope carrying `request_id`."""
    request_data = dump_params(request)
    if progress_token is not None:
        params = request_data.setdefault("params", {})
        params.setdefault("_meta", {})["progressToken"] = progress_token
    return JSONRPCMessage(JSONRPCRequest(jsonrpc=JSONRPC_VERSION, id=request_id, **request_data))


def notification_message(notification: BaseModel) -> JSONRPCMessage:
    return JSONRPCMessage(JSONRPCNotification(jsonrpc=JSONRPC_VERSION, **dump_params(notification)))


def response_message(request_id: RequestId, response: BaseModel | ErrorData) -> JSONRPCMessage:
    """Wrap a handler outcome as either a result or an error response."""
    if isinstance(response, ErrorData):
        return JSONRPCMessage(JSONRPCError(jsonrpc=JSONRPC_VERSION, id=request_id, error=response))
    return JSONRPCMessage(JSONRPCResponse(jsonrpc=JSONRPC_VERSION, id=request_id, result=dump_params(response)))


class LineBuffer:
    """Splits a character stream into newline-delimited frames."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        lines = (self._buffer + chunk).split("\n")
        self._buffer = lines.pop()
        return [line for line in lines if line.strip()]

    @property
    def pending(self) -> str:
        return self._buffer
