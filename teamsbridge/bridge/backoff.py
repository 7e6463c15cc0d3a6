"""
Adaptive per-thread poll delay.

Threads with fresh messages are polled at the base delay; quiet threads back
off to the idle cap; failing threads back off exponentially to the failure
cap unless the server supplied an explicit Retry-After.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from teamsbridge.config import PollBackoffConfig
from teamsbridge.exceptions import RetryableError, TeamsAPIError


class PollBackoffReason(str, Enum):
    SUCCESS = "success"
    IDLE = "idle"
    RETRY_AFTER = "retry_after"
    FAILURE = "failure"
    CLIENT_4XX = "client_4xx"


@dataclass
class PollBackoff:
    """Backoff state for one polled thread. `delay` is in seconds."""

    config: PollBackoffConfig = field(default_factory=PollBackoffConfig)
    failures: int = 0
    delay: float = 0.0

    def __post_init__(self) -> None:
        if self.delay <= 0:
            self.delay = self.config.base

    def on_success(self) -> None:
        self.failures = 0
        self.delay = self.config.base

    def on_idle(self) -> None:
        self.failures = 0
        self.delay = min(max(self.delay, self.config.base) * 2, self.config.idle_cap)

    def on_failure(self) -> None:
        self.failures += 1
        delay = self.config.base * (2 ** (self.failures - 1))
        self.delay = min(delay, self.config.failure_cap)

    def on_retry_after(self, seconds: float) -> None:
        if seconds <= 0:
            self.on_failure()
            return
        self.failures += 1
        self.delay = seconds

    def on_client_error(self) -> None:
        self.failures = 0
        self.delay = self.config.idle_cap


def _is_client_4xx(status: int) -> bool:
    return 400 <= status < 500 and status != 429


def apply_poll_backoff(
    backoff: PollBackoff, messages_ingested: int, error: Optional[BaseException] = None
) -> tuple[float, PollBackoffReason]:
    """Fold one poll outcome into `backoff` and return (delay, reason)."""
    if error is None:
        if messages_ingested > 0:
            backoff.on_success()
            return backoff.delay, PollBackoffReason.SUCCESS
        backoff.on_idle()
        return backoff.delay, PollBackoffReason.IDLE

    if isinstance(error, RetryableError):
        if error.status == 429 and error.retry_after:
            backoff.on_retry_after(error.retry_after)
            return backoff.delay, PollBackoffReason.RETRY_AFTER
        backoff.on_failure()
        return backoff.delay, PollBackoffReason.FAILURE

    if isinstance(error, TeamsAPIError) and _is_client_4xx(error.status):
        backoff.on_client_error()
        return backoff.delay, PollBackoffReason.CLIENT_4XX

    backoff.on_failure()
    return backoff.delay, PollBackoffReason.FAILURE
