"""HTTP plumbing shared by the lifecycle manager, provisioner and executor.

All requests go through an httpx.AsyncClient carrying the configured timeout
and the session-broker User-Agent. Components accept an optional client
(tests inject one backed by httpx.MockTransport); without one, a client is
created for the duration of a single operation.
"""

from __future__ import annotations

__all__ = [
    "USER_AGENT",
    "client_scope",
    "create_http_client",
    "is_retriable_status",
    "response_snippet",
]

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from session_broker import __version__
from session_broker.constants import APP_NAME

# User-Agent header for identity-service and query-backend requests
USER_AGENT = f"{APP_NAME}/{__version__}"


def create_http_client(timeout_seconds: float, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Create an AsyncClient with the broker's timeout and User-Agent.

    Args:
        timeout_seconds: Connect/read/write/pool timeout.
        transport: Optional transport (e.g. httpx.MockTransport in tests).

    Returns:
        New client; the caller owns it and must close it.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


@asynccontextmanager
async def client_scope(client: httpx.AsyncClient | None, timeout_seconds: float) -> AsyncIterator[httpx.AsyncClient]:
    """Yield ``client`` if given, else a temporary client closed on exit."""
    if client is not None:
        yield client
        return
    async with create_http_client(timeout_seconds) as owned:
        yield owned


def is_retriable_status(status: int) -> bool:
    """429 (rate limited) and 5xx (transient server fault) are worth retrying."""
    return status == 429 or 500 <= status < 600


def response_snippet(response: httpx.Response, limit: int) -> str:
    """First ``limit`` characters of the response body for error messages."""
    try:
        text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    return text[:limit]
