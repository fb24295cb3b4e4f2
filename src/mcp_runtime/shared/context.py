from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic

from typing_extensions import TypeVar

from mcp_runtime.types import RequestId, RequestParams

if TYPE_CHECKING:
    from mcp_runtime.shared.session import BaseSession

SessionT = TypeVar("SessionT", bound="BaseSession", default="BaseSession")
LifespanContextT = TypeVar("LifespanContextT", default=Any)
RequestT = TypeVar("RequestT", default=Any)


@dataclass
class RequestContext(Generic[SessionT, LifespanContextT, RequestT]):
    """What a request handler knows about the request it is serving."""

    request_id: RequestId
    meta: RequestParams.Meta | None
    session: SessionT
    lifespan_context: LifespanContextT
    # Transport-specific request object, e.g. the starlette Request of an HTTP POST
    request: RequestT | None = None
