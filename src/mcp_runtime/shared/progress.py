from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from mcp_runtime.shared.context import RequestContext
from mcp_runtime.shared.session import BaseSession
from mcp_runtime.types import ProgressToken, RequestId


class Progress(BaseModel):
    progress: float
    total: float | None


@dataclass
class ProgressContext:
    session: BaseSession
    progress_token: ProgressToken
    total: float | None
    related_request_id: RequestId | None = None
    current: float = field(default=0.0, init=False)

    async def progress(self, amount: float, message: str | None = None) -> None:
        self.current += amount

        await self.session.send_progress_notification(
            self.progress_token,
            self.current,
            total=self.total,
            message=message,
            related_request_id=self.related_request_id,
        )


@contextmanager
def progress(
    ctx: RequestContext[BaseSession, Any, Any],
    total: float | None = None,
) -> Generator[ProgressContext, None, None]:
    if ctx.meta is None or ctx.meta.progressToken is None:
        raise ValueError("No progress token provided")

    yield ProgressContext(ctx.session, ctx.meta.progressToken, total, related_request_id=ctx.request_id)
