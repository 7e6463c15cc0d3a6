"""
Tests for teamsbridge.http_client session helpers.
"""

import aiohttp
import pytest

from teamsbridge.http_client import (
    DEFAULT_TIMEOUT,
    UPLOAD_TIMEOUT,
    body_snippet,
    create_client_session,
    get_default_timeout,
)


class TestTimeouts:
    """Tests for the shared timeout presets."""

    def test_default_timeout(self):
        """Consumer calls get a 30s budget with a 10s connect limit."""
        assert get_default_timeout() is DEFAULT_TIMEOUT
        assert (DEFAULT_TIMEOUT.total, DEFAULT_TIMEOUT.connect, DEFAULT_TIMEOUT.sock_read) == (30, 10, 20)

    def test_upload_timeout(self):
        """File transfers get a longer budget."""
        assert (UPLOAD_TIMEOUT.total, UPLOAD_TIMEOUT.sock_read) == (120, 110)


class TestCreateClientSession:
    """Tests for session construction."""

    @pytest.mark.asyncio
    async def test_uses_default_timeout(self):
        """Sessions default to DEFAULT_TIMEOUT."""
        async with create_client_session() as session:
            assert isinstance(session, aiohttp.ClientSession)
            assert session.timeout == DEFAULT_TIMEOUT

    @pytest.mark.asyncio
    async def test_custom_timeout_and_cookie_jar(self):
        """Explicit timeouts and extra session options are passed through."""
        jar = aiohttp.DummyCookieJar()
        async with create_client_session(timeout=UPLOAD_TIMEOUT, cookie_jar=jar) as session:
            assert session.timeout == UPLOAD_TIMEOUT
            assert session.cookie_jar is jar


def test_body_snippet_truncates_and_decodes():
    """Snippets are bounded and tolerate invalid UTF-8."""
    assert body_snippet(b"  hello world  ", 7) == "hello"
    assert body_snippet(b"\xff\xfeok", 10).endswith("ok")
