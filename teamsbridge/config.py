"""
Configuration module for the bridge core.

Provides frozen, validated configuration objects for the request executor,
the poll backoff policy, Graph uploads and the consumer login flow, with
support for environment variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from teamsbridge.exceptions import ConfigurationError

MIB = 1024 * 1024

# Graph requires upload-session chunks to be a multiple of 320 KiB
CHUNK_ALIGNMENT = 327_680

AUTH_STATE_FILENAME = "auth.json"
COOKIES_FILENAME = "cookies.json"


@dataclass(frozen=True)
class ExecutorConfig:
    """Retry budget and backoff bounds for RequestExecutor.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        base_backoff: Delay in seconds before the first retry (pre-jitter).
        max_backoff: Upper bound in seconds for the computed delay (pre-jitter).
    """

    max_retries: int = 4
    base_backoff: float = 0.5
    max_backoff: float = 10.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must not be negative")
        if self.base_backoff <= 0:
            raise ConfigurationError("base_backoff must be positive")
        if self.max_backoff < self.base_backoff:
            raise ConfigurationError("max_backoff must be >= base_backoff")

    def with_overrides(
        self,
        max_retries: Optional[int] = None,
        base_backoff: Optional[float] = None,
        max_backoff: Optional[float] = None,
    ) -> ExecutorConfig:
        """Create a new config with specified overrides."""
        return ExecutorConfig(
            max_retries=max_retries if max_retries is not None else self.max_retries,
            base_backoff=base_backoff if base_backoff is not None else self.base_backoff,
            max_backoff=max_backoff if max_backoff is not None else self.max_backoff,
        )


@dataclass(frozen=True)
class PollBackoffConfig:
    """Delay bounds for the per-thread poll loop.

    Attributes:
        base: Delay after a productive poll, and the first step of each schedule.
        idle_cap: Ceiling for the idle schedule and the delay after a client (4xx) error.
        failure_cap: Ceiling for the failure schedule.
    """

    base: float = 2.0
    idle_cap: float = 30.0
    failure_cap: float = 60.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.base <= 0:
            raise ConfigurationError("base must be positive")
        if self.idle_cap < self.base:
            raise ConfigurationError("idle_cap must be >= base")
        if self.failure_cap < self.base:
            raise ConfigurationError("failure_cap must be >= base")

    def with_overrides(
        self,
        base: Optional[float] = None,
        idle_cap: Optional[float] = None,
        failure_cap: Optional[float] = None,
    ) -> PollBackoffConfig:
        """Create a new config with specified overrides."""
        return PollBackoffConfig(
            base=base if base is not None else self.base,
            idle_cap=idle_cap if idle_cap is not None else self.idle_cap,
            failure_cap=failure_cap if failure_cap is not None else self.failure_cap,
        )


@dataclass(frozen=True)
class UploadConfig:
    """Size limits for Graph file transfer.

    Attributes:
        small_file_limit: Largest payload sent as a single PUT.
        chunk_size: Upload-session chunk size; must be a multiple of CHUNK_ALIGNMENT.
        max_download_bytes: Largest drive item content accepted on download.
    """

    small_file_limit: int = 4 * MIB
    chunk_size: int = (5 * MIB // CHUNK_ALIGNMENT) * CHUNK_ALIGNMENT
    max_download_bytes: int = 10 * MIB

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.small_file_limit < 0:
            raise ConfigurationError("small_file_limit must not be negative")
        if self.chunk_size <= 0 or self.chunk_size % CHUNK_ALIGNMENT != 0:
            raise ConfigurationError(
                f"chunk_size must be a positive multiple of {CHUNK_ALIGNMENT}"
            )
        if self.max_download_bytes <= 0:
            raise ConfigurationError("max_download_bytes must be positive")


@dataclass(frozen=True)
class AuthConfig:
    """Client registration and endpoints for the consumer login flow."""

    client_id: str = "4b3e8f46-56d3-427f-b1e2-d239b2ea6bca"
    redirect_uri: str = "https://teams.live.com/v2"
    authorize_endpoint: str = "https://login.live.com/oauth20_authorize.srf"
    token_endpoint: str = "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
    skype_token_endpoint: str = "https://teams.live.com/api/auth/v1.0/authz/consumer"
    scopes: tuple[str, ...] = field(
        default=(
            "openid",
            "profile",
            "offline_access",
            "https://graph.microsoft.com/Files.ReadWrite",
        )
    )

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.client_id.strip():
            raise ConfigurationError("client_id must not be empty")
        if not self.redirect_uri.startswith("https://"):
            raise ConfigurationError("redirect_uri must be an https URL")


def _get_env_int(name: str) -> Optional[int]:
    """Get an integer from environment variable, or None if not set/invalid."""
    value = os.environ.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _get_env_float(name: str) -> Optional[float]:
    """Get a float from environment variable, or None if not set/invalid."""
    value = os.environ.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def get_executor_config(base: Optional[ExecutorConfig] = None) -> ExecutorConfig:
    """Get executor configuration with environment overrides applied.

    Environment variables:
        TEAMSBRIDGE_EXECUTOR_MAX_RETRIES
        TEAMSBRIDGE_EXECUTOR_BASE_BACKOFF
        TEAMSBRIDGE_EXECUTOR_MAX_BACKOFF
    """
    return (base or ExecutorConfig()).with_overrides(
        max_retries=_get_env_int("TEAMSBRIDGE_EXECUTOR_MAX_RETRIES"),
        base_backoff=_get_env_float("TEAMSBRIDGE_EXECUTOR_BASE_BACKOFF"),
        max_backoff=_get_env_float("TEAMSBRIDGE_EXECUTOR_MAX_BACKOFF"),
    )


def get_poll_backoff_config(base: Optional[PollBackoffConfig] = None) -> PollBackoffConfig:
    """Get poll backoff configuration with environment overrides applied.

    Environment variables:
        TEAMSBRIDGE_POLL_BASE
        TEAMSBRIDGE_POLL_IDLE_CAP
        TEAMSBRIDGE_POLL_FAILURE_CAP
    """
    return (base or PollBackoffConfig()).with_overrides(
        base=_get_env_float("TEAMSBRIDGE_POLL_BASE"),
        idle_cap=_get_env_float("TEAMSBRIDGE_POLL_IDLE_CAP"),
        failure_cap=_get_env_float("TEAMSBRIDGE_POLL_FAILURE_CAP"),
    )


def default_state_dir() -> Path:
    """Directory holding the auth-state and cookie files.

    Uses TEAMSBRIDGE_STATE_DIR when set, else ~/.config/teamsbridge.
    """
    override = os.environ.get("TEAMSBRIDGE_STATE_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "teamsbridge"


def default_auth_state_path() -> Path:
    return default_state_dir() / AUTH_STATE_FILENAME


def default_cookies_path() -> Path:
    return default_state_dir() / COOKIES_FILENAME


__all__ = [
    "MIB",
    "CHUNK_ALIGNMENT",
    "ExecutorConfig",
    "PollBackoffConfig",
    "UploadConfig",
    "AuthConfig",
    "get_executor_config",
    "get_poll_backoff_config",
    "AUTH_STATE_FILENAME",
    "COOKIES_FILENAME",
    "default_state_dir",
    "default_auth_state_path",
    "default_cookies_path",
]
