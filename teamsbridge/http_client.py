"""
Standardized HTTP client configuration with proper timeouts.

Provides consistent timeout and session management across all aiohttp usage.
Clients in this package accept an injected session; use these helpers to
create one instead of constructing ClientSession directly.

Usage:
    from teamsbridge.http_client import create_client_session, UPLOAD_TIMEOUT

    async with create_client_session() as session:
        client = ConsumerAPIClient(session, auth_holder)

    async with create_client_session(timeout=UPLOAD_TIMEOUT) as session:
        graph = GraphUploadClient(session, auth_holder)
"""

from __future__ import annotations

import aiohttp
from aiohttp import ClientTimeout

__all__ = [
    "DEFAULT_TIMEOUT",
    "UPLOAD_TIMEOUT",
    "TEAMS_ERROR_SNIPPET_BYTES",
    "GRAPH_ERROR_SNIPPET_BYTES",
    "get_default_timeout",
    "create_client_session",
    "body_snippet",
]

# Default timeout for consumer API calls (30 seconds total)
DEFAULT_TIMEOUT = ClientTimeout(
    total=30,  # Total time for the entire request
    connect=10,  # Time to establish connection
    sock_read=20,  # Time to read response
)

# Longer timeout for file transfer (chunk PUTs, downloads)
UPLOAD_TIMEOUT = ClientTimeout(
    total=120,
    connect=10,
    sock_read=110,
)

# Bounded error body sizes kept on terminal errors
TEAMS_ERROR_SNIPPET_BYTES = 2048
GRAPH_ERROR_SNIPPET_BYTES = 1024


def get_default_timeout() -> ClientTimeout:
    """Get the default timeout configuration.

    Returns:
        ClientTimeout with sensible defaults for most operations.
    """
    return DEFAULT_TIMEOUT


def create_client_session(
    timeout: ClientTimeout | None = None,
    **kwargs,
) -> aiohttp.ClientSession:
    """Create an aiohttp ClientSession with proper timeout configuration.

    Args:
        timeout: Optional custom timeout. Uses DEFAULT_TIMEOUT if not specified.
        **kwargs: Additional arguments passed to ClientSession (e.g. cookie_jar).

    Returns:
        Configured aiohttp.ClientSession.
    """
    if timeout is None:
        timeout = DEFAULT_TIMEOUT
    return aiohttp.ClientSession(timeout=timeout, **kwargs)


def body_snippet(body: bytes, limit: int) -> str:
    """Decode at most `limit` bytes of a response body for diagnostics."""
    return body[:limit].decode("utf-8", errors="replace").strip()
