"""
Structured logging configuration for teamsbridge.

Provides JSON-formatted logging with automatic context propagation so that
every record emitted while handling a thread carries its identifiers.

Usage:
    from teamsbridge.logging_config import configure_logging, get_logger, LogContext

    # Configure at application entry point
    configure_logging(level="INFO", json_output=True)

    # Get a structured logger
    logger = get_logger(__name__)
    logger.info("teams send retry", attempt=2, status=429)

    # Automatic context propagation (flows through awaits via ContextVar)
    with LogContext(thread_id="19:abc@thread.v2", client_message_id="1700000000"):
        await executor.execute(session, request, classify)
"""

import json
import logging
import logging.handlers
import os
import sys
import threading
import time
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional

# Context variables for automatic field injection
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Environment configuration
LOG_LEVEL = os.environ.get("TEAMSBRIDGE_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("TEAMSBRIDGE_LOG_FORMAT", "json")  # "json" or "text"
LOG_FILE = os.environ.get("TEAMSBRIDGE_LOG_FILE", "")

# Log rotation configuration (for file logging)
LOG_MAX_BYTES = int(os.environ.get("TEAMSBRIDGE_LOG_MAX_BYTES", 10 * 1024 * 1024))
LOG_BACKUP_COUNT = int(os.environ.get("TEAMSBRIDGE_LOG_BACKUP_COUNT", 5))

# Context keys promoted to top-level record fields, in output order
CONTEXT_KEYS = ("thread_id", "room_id", "client_message_id", "teams_message_id", "emotion_key", "operation")


@dataclass
class LogRecord:
    """Structured log record with all context fields."""
    timestamp: str
    level: str
    logger: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: Dict[str, Any] = {
            "ts": self.timestamp,
            "level": self.level,
            "logger": self.logger,
            "msg": self.message,
        }
        for key in CONTEXT_KEYS:
            if self.context.get(key):
                result[key] = self.context[key]
        if self.fields:
            result.update(self.fields)
        if self.exception:
            result["exception"] = self.exception
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        """Format as human-readable text."""
        parts = [
            self.timestamp,
            f"[{self.level}]",
            f"[{self.logger}]",
        ]
        if self.context.get("thread_id"):
            parts.append(f"[{self.context['thread_id']}]")
        parts.append(self.message)
        extra = {k: self.context[k] for k in CONTEXT_KEYS[1:] if self.context.get(k)}
        extra.update(self.fields)
        if extra:
            parts.append(" ".join(f"{k}={v}" for k, v in extra.items()))
        if self.exception:
            parts.append(f"\n{self.exception.get('traceback', '')}")
        return " ".join(parts)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with structured field support."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_record = LogRecord(
            timestamp=_utc_now().strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z",
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
            fields=getattr(record, "structured_fields", {}),
            context=_log_context.get(),
        )

        if record.exc_info:
            log_record.exception = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]) if record.exc_info[1] else "",
                "traceback": self.formatException(record.exc_info),
            }

        return log_record.to_json()


class TextFormatter(logging.Formatter):
    """Human-readable text formatter with structured field support."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as text."""
        log_record = LogRecord(
            timestamp=_utc_now().strftime("%Y-%m-%d %H:%M:%S"),
            level=record.levelname,
            logger=record.name.split(".")[-1],  # Short name
            message=record.getMessage(),
            fields=getattr(record, "structured_fields", {}),
            context=_log_context.get(),
        )

        if record.exc_info:
            log_record.exception = {
                "traceback": self.formatException(record.exc_info),
            }

        return log_record.to_text()


class StructuredLogger:
    """
    Structured logger wrapper with automatic context propagation.

    Provides methods for logging with structured fields that are
    automatically serialized to JSON or text format.
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)
        self._name = name

    def _log(
        self,
        level: int,
        message: str,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        """Internal log method with structured fields."""
        if not self._logger.isEnabledFor(level):
            return

        extra = {"structured_fields": fields}
        self._logger.log(level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, **fields: Any) -> None:
        """Log at DEBUG level with optional structured fields."""
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        """Log at INFO level with optional structured fields."""
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        """Log at WARNING level with optional structured fields."""
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, exc_info: bool = False, **fields: Any) -> None:
        """Log at ERROR level with optional structured fields and exception."""
        self._log(logging.ERROR, message, exc_info=exc_info, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Log at ERROR level with exception info."""
        self._log(logging.ERROR, message, exc_info=True, **fields)

    def isEnabledFor(self, level: int) -> bool:
        """Check if logger is enabled for level."""
        return self._logger.isEnabledFor(level)


class LogContext:
    """
    Context manager for setting log context fields.

    All logs within the context will automatically include the specified fields.
    Empty values are ignored so callers can pass optional identifiers directly.
    """

    def __init__(self, **fields: Any):
        self._fields = {k: v for k, v in fields.items() if v not in (None, "")}
        self._token: Optional[Token[Dict[str, Any]]] = None

    def __enter__(self) -> "LogContext":
        current = _log_context.get()
        merged = {**current, **self._fields}
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _log_context.reset(self._token)


def get_context() -> Dict[str, Any]:
    """Get current log context fields."""
    return _log_context.get()


def clear_context() -> None:
    """Clear all log context fields."""
    _log_context.set({})


# Logger cache (thread-safe)
_loggers: Dict[str, StructuredLogger] = {}
_loggers_lock = threading.Lock()


def get_logger(name: str) -> StructuredLogger:
    """
    Get or create a structured logger by name (thread-safe).

    Args:
        name: Logger name (typically __name__)

    Returns:
        StructuredLogger instance
    """
    with _loggers_lock:
        if name not in _loggers:
            _loggers[name] = StructuredLogger(name)
        return _loggers[name]


def configure_logging(
    level: str | None = None,
    json_output: bool | None = None,
    log_file: str | None = None,
    propagate: bool = True,
) -> None:
    """
    Configure logging for the application.

    Should be called once at application startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format; if False, text format
        log_file: Optional file path for log output
        propagate: Whether to propagate to root logger
    """
    log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    use_json = json_output if json_output is not None else (LOG_FORMAT == "json")
    file_path = log_file or LOG_FILE

    formatter = JSONFormatter() if use_json else TextFormatter()

    root = logging.getLogger()
    root.setLevel(log_level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    root.addHandler(console_handler)

    if file_path:
        file_handler = logging.handlers.RotatingFileHandler(
            file_path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        root.addHandler(file_handler)

    bridge_logger = logging.getLogger("teamsbridge")
    bridge_logger.setLevel(log_level)
    bridge_logger.propagate = propagate

    # aiohttp access logs are noisy at INFO
    logging.getLogger("aiohttp.access").setLevel(max(log_level, logging.WARNING))


def log_duration(level: str = "DEBUG"):
    """
    Decorator to log coroutine completion or failure with its duration.

    Args:
        level: Log level for the completion record
    """
    log_level = getattr(logging, level.upper(), logging.DEBUG)

    def decorator(func: Callable) -> Callable:
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            fields: Dict[str, Any] = {"function": func.__name__}
            start = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                fields["duration_ms"] = round((time.monotonic() - start) * 1000, 2)
                fields["error"] = str(e)
                logger.error(f"Function failed: {func.__name__}", **fields)
                raise
            fields["duration_ms"] = round((time.monotonic() - start) * 1000, 2)
            logger._log(log_level, f"Function completed: {func.__name__}", **fields)
            return result

        return wrapper

    return decorator


__all__ = [
    "LogRecord",
    "JSONFormatter",
    "TextFormatter",
    "StructuredLogger",
    "LogContext",
    "get_context",
    "clear_context",
    "get_logger",
    "configure_logging",
    "log_duration",
]
