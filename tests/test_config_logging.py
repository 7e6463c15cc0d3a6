"""
Tests for teamsbridge.config and teamsbridge.logging_config.
"""

import json
import logging
from unittest.mock import MagicMock

import pytest

from teamsbridge.auth.client import AuthClient
from teamsbridge.config import (
    CHUNK_ALIGNMENT,
    AuthConfig,
    ExecutorConfig,
    PollBackoffConfig,
    UploadConfig,
    default_auth_state_path,
    default_cookies_path,
    default_state_dir,
    get_executor_config,
    get_poll_backoff_config,
)
from teamsbridge.exceptions import ConfigurationError
from teamsbridge.executor import RequestExecutor
from teamsbridge.logging_config import (
    JSONFormatter,
    LogContext,
    TextFormatter,
    get_context,
    get_logger,
    log_duration,
)


class TestExecutorConfig:
    """Tests for ExecutorConfig validation and overrides."""

    def test_defaults(self):
        """Defaults match the documented retry budget."""
        config = ExecutorConfig()
        assert config.max_retries == 4
        assert config.base_backoff == 0.5
        assert config.max_backoff == 10.0

    def test_rejects_negative_retries(self):
        """A negative retry budget is a configuration error."""
        with pytest.raises(ConfigurationError):
            ExecutorConfig(max_retries=-1)

    def test_rejects_max_below_base(self):
        """max_backoff must not undercut base_backoff."""
        with pytest.raises(ConfigurationError):
            ExecutorConfig(base_backoff=2.0, max_backoff=1.0)

    def test_env_overrides(self, monkeypatch):
        """Environment variables override individual fields; invalid ones are ignored."""
        monkeypatch.setenv("TEAMSBRIDGE_EXECUTOR_MAX_RETRIES", "7")
        monkeypatch.setenv("TEAMSBRIDGE_EXECUTOR_BASE_BACKOFF", "not-a-number")
        config = get_executor_config()
        assert config.max_retries == 7
        assert config.base_backoff == 0.5

    def test_executor_default_reads_env(self, monkeypatch):
        """An executor built without a config picks up the environment overrides."""
        monkeypatch.setenv("TEAMSBRIDGE_EXECUTOR_MAX_RETRIES", "0")
        assert RequestExecutor(MagicMock()).config.max_retries == 0

    def test_auth_client_keeps_its_budget_without_env(self, monkeypatch):
        """The login client's smaller budget applies unless the environment overrides it."""
        monkeypatch.delenv("TEAMSBRIDGE_EXECUTOR_MAX_RETRIES", raising=False)
        assert AuthClient(MagicMock()).executor.config.max_retries == 2
        monkeypatch.setenv("TEAMSBRIDGE_EXECUTOR_MAX_RETRIES", "1")
        assert AuthClient(MagicMock()).executor.config.max_retries == 1


class TestPollBackoffConfig:
    """Tests for PollBackoffConfig."""

    def test_defaults(self):
        """Base 2s, idle cap 30s, failure cap 60s."""
        config = PollBackoffConfig()
        assert (config.base, config.idle_cap, config.failure_cap) == (2.0, 30.0, 60.0)

    def test_rejects_caps_below_base(self):
        """Caps below the base delay are rejected."""
        with pytest.raises(ConfigurationError):
            PollBackoffConfig(base=5.0, idle_cap=1.0)

    def test_env_overrides(self, monkeypatch):
        """TEAMSBRIDGE_POLL_* variables apply on top of the base config."""
        monkeypatch.setenv("TEAMSBRIDGE_POLL_FAILURE_CAP", "120")
        config = get_poll_backoff_config(PollBackoffConfig(base=1.0))
        assert config.base == 1.0
        assert config.failure_cap == 120.0


class TestUploadAndAuthConfig:
    """Tests for UploadConfig and AuthConfig validation."""

    def test_chunk_size_must_be_aligned(self):
        """Chunk sizes must be positive multiples of 320 KiB."""
        UploadConfig(chunk_size=CHUNK_ALIGNMENT * 2)
        with pytest.raises(ConfigurationError):
            UploadConfig(chunk_size=CHUNK_ALIGNMENT + 1)

    def test_default_chunk_size_is_aligned(self):
        """The default chunk size respects the alignment."""
        assert UploadConfig().chunk_size % CHUNK_ALIGNMENT == 0

    def test_redirect_uri_must_be_https(self):
        """Plain-http redirect URIs are rejected."""
        with pytest.raises(ConfigurationError):
            AuthConfig(redirect_uri="http://teams.live.com/v2")

    def test_state_dir_override(self, monkeypatch, tmp_path):
        """TEAMSBRIDGE_STATE_DIR relocates the state directory."""
        monkeypatch.setenv("TEAMSBRIDGE_STATE_DIR", str(tmp_path))
        assert default_state_dir() == tmp_path

    def test_state_file_paths(self, monkeypatch, tmp_path):
        """Auth-state and cookie files default into the state directory."""
        monkeypatch.setenv("TEAMSBRIDGE_STATE_DIR", str(tmp_path))
        assert default_auth_state_path() == tmp_path / "auth.json"
        assert default_cookies_path() == tmp_path / "cookies.json"


def _record(name: str, message: str, **fields) -> logging.LogRecord:
    record = logging.LogRecord(name, logging.INFO, __file__, 1, message, None, None)
    record.structured_fields = fields
    return record


class TestStructuredLogging:
    """Tests for formatters, context propagation and the duration decorator."""

    def test_json_formatter_includes_context_and_fields(self):
        """Context keys are promoted and structured fields merged."""
        with LogContext(thread_id="19:a@thread.v2", client_message_id="123", unused=""):
            output = JSONFormatter().format(_record("teamsbridge.test", "teams send attempt", status=201))
        data = json.loads(output)

        assert data["msg"] == "teams send attempt"
        assert data["thread_id"] == "19:a@thread.v2"
        assert data["client_message_id"] == "123"
        assert data["status"] == 201
        assert "unused" not in data

    def test_text_formatter(self):
        """Text output carries the thread id and key=value fields."""
        with LogContext(thread_id="19:a@thread.v2"):
            output = TextFormatter().format(_record("teamsbridge.bridge.sync", "teams sync start", cursor="5"))
        assert "[19:a@thread.v2]" in output
        assert "teams sync start" in output
        assert "cursor=5" in output

    def test_log_context_nests_and_restores(self):
        """Inner contexts merge with and then restore the outer one."""
        with LogContext(thread_id="t1"):
            with LogContext(room_id="!r"):
                assert get_context() == {"thread_id": "t1", "room_id": "!r"}
            assert get_context() == {"thread_id": "t1"}
        assert get_context() == {}

    def test_get_logger_is_cached(self):
        """The same name yields the same StructuredLogger."""
        assert get_logger("teamsbridge.x") is get_logger("teamsbridge.x")

    @pytest.mark.asyncio
    async def test_log_duration_reraises(self, caplog):
        """Failures are logged with their duration and re-raised."""

        @log_duration()
        async def boom():
            raise RuntimeError("bad")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(RuntimeError):
                await boom()
        assert any("Function failed: boom" in r.getMessage() for r in caplog.records)
