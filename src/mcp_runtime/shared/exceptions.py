from typing import Any, ClassVar

from mcp_runtime.types import (
    CAPABILITY_NOT_DECLARED,
    CONNECTION_CLOSED,
    INCOMPATIBLE_VERSION,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    NOT_INITIALIZED,
    REQUEST_CANCELLED,
    REQUEST_TIMEOUT,
    UNKNOWN_TARGET,
    ErrorData,
    RequestId,
)


class McpError(Exception):
    """Exception raised when a protocol error is received from, or destined for, a peer.

    It wraps the ErrorData carried by a JSON-RPC error response and provides access
    to the error code, message, and any additional data.

    Attributes:
        error: The ErrorData object containing error code, message, and optional
               additional data
    """

    error: ErrorData

    def __init__(self, error: ErrorData):
        """Initialize McpError with error data.

        Args:
            error: ErrorData object containing the error details
        """
        super().__init__(error.message)
        self.error = error


class _CodedError(McpError):
    """An McpError whose error code is fixed by its class."""

    code: ClassVar[int] = INTERNAL_ERROR

    def __init__(self, message: str | ErrorData, data: Any | None = None):
        if isinstance(message, ErrorData):
            super().__init__(message)
        else:
            super().__init__(ErrorData(code=self.code, message=message, data=data))


class ProtocolViolation(_CodedError):
    """Malformed message, a method illegal for the lifecycle phase, or an undeclared capability."""

    code = INVALID_REQUEST
    # Set by the codec when a malformed request still carried a usable id
    request_id: RequestId | None = None


class NotInitialized(ProtocolViolation):
    """Capability-gated traffic attempted before the session became operational."""

    code = NOT_INITIALIZED


class CapabilityNotDeclared(ProtocolViolation):
    """The side that must provide a feature did not declare the matching capability."""

    code = CAPABILITY_NOT_DECLARED


class IncompatibleVersion(_CodedError):
    """The peers share no protocol version; fatal to the session."""

    code = INCOMPATIBLE_VERSION


class UnknownTarget(_CodedError):
    """A call referenced a tool, resource or prompt with no registered owner."""

    code = UNKNOWN_TARGET


class RequestTimeout(_CodedError):
    """A pending call was not answered before its deadline."""

    code = REQUEST_TIMEOUT


class RequestCancelled(_CodedError):
    """A pending call was cancelled locally or by the peer."""

    code = REQUEST_CANCELLED


class SessionClosing(_CodedError):
    """The session is shutting down; no new requests are accepted and pending ones fail."""

    code = CONNECTION_CLOSED


class TransportFailure(SessionClosing):
    """The underlying channel broke."""


_ERRORS_BY_CODE: dict[int, type[_CodedError]] = {
    NOT_INITIALIZED: NotInitialized,
    CAPABILITY_NOT_DECLARED: CapabilityNotDeclared,
    INCOMPATIBLE_VERSION: IncompatibleVersion,
    UNKNOWN_TARGET: UnknownTarget,
    REQUEST_TIMEOUT: RequestTimeout,
    REQUEST_CANCELLED: RequestCancelled,
    CONNECTION_CLOSED: SessionClosing,
    INVALID_REQUEST: ProtocolViolation,
}


def error_from_data(error: ErrorData) -> McpError:
    """Build the most specific McpError subclass for a received error."""
    error_class = _ERRORS_BY_CODE.get(error.code)
    if error_class is None:
        return McpError(error)
    return error_class(error)
