"""Runtime settings.

Values are read from the environment (prefix ``MCP_RUNTIME_``) or a ``.env``
file. Sessions and routers never read settings on their own; composing code
passes the values it wants explicitly.
"""

from datetime import timedelta
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_runtime.shared.bridge import RetryPolicy


class RuntimeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MCP_RUNTIME_",
        env_file=".env",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Default deadline for outgoing requests; None waits forever
    request_timeout_seconds: float | None = Field(default=None, gt=0)

    # Implicit deadline carried by every server-initiated (bridged) request
    bridge_timeout_seconds: float = Field(default=60.0, gt=0)
    bridge_max_attempts: int = Field(default=1, ge=1)
    bridge_backoff_seconds: float = Field(default=0.5, ge=0)

    collision_policy: Literal["namespace", "priority", "reject"] = "namespace"
    namespace_separator: str = Field(default=".", min_length=1)

    @property
    def request_timeout(self) -> timedelta | None:
        if self.request_timeout_seconds is None:
            return None
        return timedelta(seconds=self.request_timeout_seconds)

    @property
    def bridge_timeout(self) -> timedelta:
        return timedelta(seconds=self.bridge_timeout_seconds)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.bridge_max_attempts, backoff_seconds=self.bridge_backoff_seconds)
