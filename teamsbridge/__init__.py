"""
teamsbridge: core of a bridge between a consumer chat service and Matrix

AUTH:
- PKCE authorization-code login, token capture, MSAL storage extraction
- Skypetoken exchange and refresh from the stored access token
- Atomic auth-state and cookie persistence

TRANSPORT:
- RequestExecutor with classifier-driven retry, jittered backoff and Retry-After
- ConsumerAPIClient: conversations, messages, send, typing, reactions, receipts
- GraphUploadClient: small and chunked uploads, share links, downloads

SYNCHRONIZATION:
- ThreadSyncEngine: cursor-based at-least-once message delivery
- ReactionReconciler / ReactionForwarder: reactions in both directions
- ConsumptionHorizonIngestor: remote read state to Matrix read markers
- ThreadPoller: one polling task per thread with adaptive backoff

Stores and the Matrix side are Protocols (teamsbridge.protocols); the bridge
ships no database or homeserver client of its own.
"""

from __future__ import annotations

import importlib
from typing import Any

from teamsbridge.__version__ import __version__

_EXPORT_MAP = {
    'AttachmentSender': ('teamsbridge.bridge.send', 'AttachmentSender'),
    'AuthClient': ('teamsbridge.auth.client', 'AuthClient'),
    'AuthStateHolder': ('teamsbridge.auth.state', 'AuthStateHolder'),
    'ConsumerAPIClient': ('teamsbridge.teams.client', 'ConsumerAPIClient'),
    'ConsumptionHorizonIngestor': ('teamsbridge.bridge.horizons', 'ConsumptionHorizonIngestor'),
    'GraphUploadClient': ('teamsbridge.graph.client', 'GraphUploadClient'),
    'LogContext': ('teamsbridge.logging_config', 'LogContext'),
    'MessageSender': ('teamsbridge.bridge.send', 'MessageSender'),
    'PollBackoff': ('teamsbridge.bridge.backoff', 'PollBackoff'),
    'ReactionForwarder': ('teamsbridge.bridge.reactions', 'ReactionForwarder'),
    'ReactionReconciler': ('teamsbridge.bridge.reactions', 'ReactionReconciler'),
    'ReadReceiptSender': ('teamsbridge.bridge.unread', 'ReadReceiptSender'),
    'RequestExecutor': ('teamsbridge.executor', 'RequestExecutor'),
    'ThreadIndex': ('teamsbridge.bridge.threads', 'ThreadIndex'),
    'ThreadPoller': ('teamsbridge.bridge.poller', 'ThreadPoller'),
    'ThreadSyncEngine': ('teamsbridge.bridge.sync', 'ThreadSyncEngine'),
    'TypingForwarder': ('teamsbridge.bridge.send', 'TypingForwarder'),
    'UnreadCycleTracker': ('teamsbridge.bridge.unread', 'UnreadCycleTracker'),
    'apply_poll_backoff': ('teamsbridge.bridge.backoff', 'apply_poll_backoff'),
    'configure_logging': ('teamsbridge.logging_config', 'configure_logging'),
    'get_logger': ('teamsbridge.logging_config', 'get_logger'),
}


def __getattr__(name: str) -> Any:
    """Lazily import public symbols so importing the package stays cheap."""
    try:
        module_name, attr_name = _EXPORT_MAP[name]
    except KeyError as exc:
        raise AttributeError(f"module 'teamsbridge' has no attribute {name!r}") from exc
    module = importlib.import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))


__all__ = [
    "__version__",
    # Auth
    "AuthClient",
    "AuthStateHolder",
    # Transport
    "RequestExecutor",
    "ConsumerAPIClient",
    "GraphUploadClient",
    # Synchronization
    "ThreadIndex",
    "ThreadSyncEngine",
    "ReactionReconciler",
    "ReactionForwarder",
    "ConsumptionHorizonIngestor",
    "PollBackoff",
    "apply_poll_backoff",
    "ThreadPoller",
    # Matrix -> remote
    "MessageSender",
    "AttachmentSender",
    "TypingForwarder",
    "UnreadCycleTracker",
    "ReadReceiptSender",
    # Logging
    "configure_logging",
    "get_logger",
    "LogContext",
]
