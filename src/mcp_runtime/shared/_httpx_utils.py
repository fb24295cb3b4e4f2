"""Utilities for creating standardized httpx AsyncClient instances."""

from typing import Any, Protocol

import httpx

__all__ = ["create_mcp_http_client", "McpHttpClientFactory"]


class McpHttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient: ...


def create_mcp_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
) -> httpx.AsyncClient:
    """Create an httpx AsyncClient with the runtime's defaults.

    Redirects are always followed and the timeout defaults to 30 seconds.
    The returned client must be used as an async context manager so that its
    connections are released.

    Examples:
        async with create_mcp_http_client() as client:
            response = await client.get("https://api.example.com")

        timeout = httpx.Timeout(60.0, read=300.0)
        async with create_mcp_http_client(headers={"X-Trace": "1"}, timeout=timeout) as client:
            response = await client.get("/long-request")
    """
    kwargs: dict[str, Any] = {
        "follow_redirects": True,
        "timeout": timeout if timeout is not None else httpx.Timeout(30.0),
    }
    if headers is not None:
        kwargs["headers"] = headers
    if auth is not None:
        kwargs["auth"] = auth
    return httpx.AsyncClient(**kwargs)
