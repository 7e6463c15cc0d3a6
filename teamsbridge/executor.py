"""
Retrying request executor for the consumer chat and file-storage APIs.

RequestExecutor performs one logical HTTP call, re-issuing it when a response
classifier (or the transport) reports a retryable condition. It knows nothing
about specific endpoints: callers supply a PreparedRequest and a classifier
that turns an HTTPResponse into success, a RetryableError, or a terminal error.

Backoff for retry n is min(max_backoff, base_backoff * 2^(n-1)) scaled by a
jitter factor in [0.5, 1.5). An explicit Retry-After from the classifier is
used as-is. Task cancellation propagates from any await, including the
backoff sleep, and no further attempt is made.
"""

from __future__ import annotations

import asyncio
import errno
import json
import random
import socket
import ssl
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Type

import aiohttp

from teamsbridge.config import ExecutorConfig, get_executor_config
from teamsbridge.exceptions import (
    ContentTooLargeError,
    NetworkError,
    RetryableError,
    RetryBodyMissingError,
    TeamsBridgeError,
)
from teamsbridge.http_client import TEAMS_ERROR_SNIPPET_BYTES, body_snippet
from teamsbridge.logging_config import get_logger

logger = get_logger(__name__)

# errno values for connections dropped mid-flight; safe to retry
_TRANSIENT_ERRNOS = frozenset(
    {errno.ECONNRESET, errno.ECONNABORTED, errno.EPIPE, errno.ETIMEDOUT}
)

_READ_CHUNK_BYTES = 64 * 1024


@dataclass
class PreparedRequest:
    """A replayable description of one HTTP call.

    A request with a body must carry rebuild_body to be retried; the body is
    produced fresh for every attempt after the first. max_body_bytes caps a
    successful response body; larger bodies raise ContentTooLargeError.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    rebuild_body: Optional[Callable[[], bytes]] = None
    max_body_bytes: Optional[int] = None

    @classmethod
    def with_json(
        cls, method: str, url: str, payload: Any, headers: Optional[dict[str, str]] = None
    ) -> "PreparedRequest":
        """Build a request whose JSON body can be replayed on retry."""
        encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        merged = {"Content-Type": "application/json", **(headers or {})}
        return cls(method, url, merged, encoded, lambda: encoded)

    def body_for_attempt(self, attempt: int) -> Optional[bytes]:
        if attempt == 1 or self.body is None:
            return self.body
        if self.rebuild_body is None:
            raise RetryBodyMissingError()
        return self.rebuild_body()


@dataclass
class HTTPResponse:
    """Fully read response handed to classifiers and callers."""

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def json(self) -> Any:
        return json.loads(self.body or b"null")

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


# Outcome of a classifier: None on success, else the error to retry or raise
Classifier = Callable[[HTTPResponse], Optional[Exception]]


def parse_retry_after(value: str, now: Optional[datetime] = None) -> float:
    """Parse a Retry-After header into seconds.

    Accepts a non-negative integer number of seconds or an HTTP-date.
    Dates in the past and unparseable values yield 0.
    """
    value = (value or "").strip()
    if not value:
        return 0.0
    try:
        seconds = int(value)
    except ValueError:
        seconds = -1
    if seconds >= 0:
        return float(seconds)
    try:
        at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return 0.0
    if at is None:
        return 0.0
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    delta = (at - (now or datetime.now(timezone.utc))).total_seconds()
    return delta if delta > 0 else 0.0


def classify_status(
    error_type: Type[TeamsBridgeError],
    snippet_bytes: int = TEAMS_ERROR_SNIPPET_BYTES,
) -> Classifier:
    """Build the standard classifier used by every consumer and Graph endpoint.

    2xx succeeds, 429 is retryable with its Retry-After delay, 5xx is
    retryable without one, and anything else is a terminal `error_type`
    carrying the status and a bounded body snippet.
    """

    def classify(response: HTTPResponse) -> Optional[Exception]:
        if response.ok:
            return None
        terminal = error_type(response.status, body_snippet(response.body, snippet_bytes))
        if response.status == 429:
            retry_after = parse_retry_after(response.header("Retry-After"))
            return RetryableError(
                status=response.status,
                retry_after=retry_after if retry_after > 0 else None,
                cause=terminal,
            )
        if response.status >= 500:
            return RetryableError(status=response.status, cause=terminal)
        return terminal

    return classify


async def _read_capped(resp: aiohttp.ClientResponse, limit: int) -> bytes:
    declared = resp.content_length
    if declared is not None and declared > limit:
        raise ContentTooLargeError(declared, limit)
    payload = bytearray()
    async for chunk in resp.content.iter_chunked(_READ_CHUNK_BYTES):
        payload.extend(chunk)
        if len(payload) > limit:
            raise ContentTooLargeError(len(payload), limit)
    return bytes(payload)


def network_error_kind(exc: BaseException) -> str:
    """Classify a transport exception as "tls", "dns", "retryable" or "fatal"."""
    if isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError)):
        return "tls"
    if isinstance(exc, aiohttp.ClientConnectorError) and isinstance(
        exc.os_error, socket.gaierror
    ):
        return "dns"
    if isinstance(exc, socket.gaierror):
        return "dns"
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerDisconnectedError)):
        return "retryable"
    if isinstance(exc, aiohttp.ClientPayloadError):
        return "retryable"
    if isinstance(exc, (aiohttp.ClientOSError, ConnectionError)):
        if getattr(exc, "errno", None) in _TRANSIENT_ERRNOS:
            return "retryable"
    return "fatal"


class RequestExecutor:
    """Executes PreparedRequests with classification-driven retry.

    Args:
        session: aiohttp session used for every attempt.
        config: Retry budget and backoff bounds (environment overrides applied when omitted).
        jitter: Optional strategy mapping a computed backoff to the delay
            actually slept. Defaults to a uniform multiplier in [0.5, 1.5).
        sleep: Awaitable sleep, injectable for tests. Defaults to asyncio.sleep.
        rng: Random source for the default jitter.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: Optional[ExecutorConfig] = None,
        jitter: Optional[Callable[[float], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.config = config or get_executor_config()
        self._jitter = jitter
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._jitter_lock = threading.Lock()

    def compute_backoff(self, retry: int) -> float:
        """Jittered delay before retry number `retry` (1-based)."""
        backoff = self.config.base_backoff * (2 ** (retry - 1))
        backoff = min(backoff, self.config.max_backoff)
        return self._apply_jitter(backoff)

    def _apply_jitter(self, backoff: float) -> float:
        with self._jitter_lock:
            if self._jitter is not None:
                return self._jitter(backoff)
            return backoff * (0.5 + self._rng.random())

    async def _send(self, request: PreparedRequest, body: Optional[bytes]) -> HTTPResponse:
        async with self.session.request(
            request.method,
            request.url,
            headers=request.headers,
            data=body,
        ) as resp:
            if request.max_body_bytes is not None and 200 <= resp.status < 300:
                payload = await _read_capped(resp, request.max_body_bytes)
            else:
                payload = await resp.read()
            return HTTPResponse(status=resp.status, headers=dict(resp.headers), body=payload)

    async def execute(self, request: PreparedRequest, classify: Classifier) -> HTTPResponse:
        """Perform the request, retrying per the classifier and transport errors.

        Returns:
            The successful HTTPResponse.

        Raises:
            RetryableError: Retry budget exhausted on a retryable response.
            NetworkError: DNS or TLS failure (never retried).
            RetryBodyMissingError: A retry was needed but the body is not replayable.
            ContentTooLargeError: A successful body exceeded request.max_body_bytes.
            Exception: The classifier's terminal error, or a non-retryable transport error.
        """
        max_retries = self.config.max_retries
        retries = 0
        while True:
            attempt = retries + 1
            body = request.body_for_attempt(attempt)
            try:
                response = await self._send(request, body)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                kind = network_error_kind(exc)
                if kind == "retryable" and retries < max_retries:
                    self._ensure_replayable(request)
                    retries += 1
                    delay = self.compute_backoff(retries)
                    logger.warning("teams send retry", attempt=attempt + 1, error=type(exc).__name__)
                    logger.info("teams send backoff", attempt=attempt + 1, duration=round(delay, 3))
                    await self._sleep(delay)
                    continue
                logger.warning("teams send failed", attempts=attempt, error=str(exc) or type(exc).__name__)
                if kind in ("dns", "tls"):
                    raise NetworkError(f"{kind} failure for {request.method} request", kind, exc) from exc
                raise

            outcome = classify(response)
            if outcome is None:
                if retries > 0:
                    logger.info("teams send succeeded", attempts=attempt)
                return response

            if isinstance(outcome, RetryableError) and retries < max_retries:
                self._ensure_replayable(request)
                retries += 1
                if outcome.retry_after is not None and outcome.retry_after > 0:
                    delay = outcome.retry_after
                else:
                    delay = self.compute_backoff(retries)
                fields: dict[str, Any] = {"attempt": attempt + 1, "status": outcome.status}
                if outcome.retry_after:
                    fields["retry_after"] = outcome.retry_after
                logger.warning("teams send retry", **fields)
                logger.info("teams send backoff", attempt=attempt + 1, duration=round(delay, 3))
                await self._sleep(delay)
                continue

            logger.warning("teams send failed", attempts=attempt, error=str(outcome))
            raise outcome

    @staticmethod
    def _ensure_replayable(request: PreparedRequest) -> None:
        if request.body is not None and request.rebuild_body is None:
            raise RetryBodyMissingError()


__all__ = [
    "PreparedRequest",
    "HTTPResponse",
    "Classifier",
    "RequestExecutor",
    "parse_retry_after",
    "classify_status",
    "network_error_kind",
]
