"""
Custom exception types for teamsbridge.

This module defines the hierarchy of exceptions used throughout the bridge.
Using specific exception types enables:
- Retry decisions based on type instead of message matching
- Endpoint-specific diagnostics (status + bounded body snippet)
- A single actionable message for authentication failures
"""

from __future__ import annotations

from typing import Any


class TeamsBridgeError(Exception):
    """Base exception for all teamsbridge errors.

    All custom exceptions in teamsbridge should inherit from this class
    to enable catching all bridge-specific errors with a single handler.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class ConfigurationError(TeamsBridgeError):
    """Raised when configuration is invalid or missing."""

    pass


# ============================================================================
# Validation Errors
# ============================================================================


class ValidationError(TeamsBridgeError):
    """Raised when a precondition fails before any network call is made."""

    def __init__(self, field: str, reason: str = "is required"):
        super().__init__(f"{field} {reason}", {"field": field})
        self.field = field
        self.reason = reason


# ============================================================================
# Transport Errors
# ============================================================================


class TransportError(TeamsBridgeError):
    """Base exception for request execution failures."""

    pass


class RetryableError(TransportError):
    """Classifier outcome asking the executor to retry the request.

    Attributes:
        status: HTTP status that triggered the retry (0 for network errors)
        retry_after: Explicit server-supplied delay in seconds, or None
        cause: The terminal error to surface if the retry budget is exhausted
    """

    def __init__(
        self,
        status: int = 0,
        retry_after: float | None = None,
        cause: Exception | None = None,
    ):
        details: dict[str, Any] = {"status": status}
        if retry_after is not None:
            details["retry_after"] = retry_after
        super().__init__(f"retryable response: status {status}", details)
        self.status = status
        self.retry_after = retry_after
        self.cause = cause


class RetryBodyMissingError(TransportError):
    """Raised when a request body would be re-sent without a rebuild function."""

    def __init__(self) -> None:
        super().__init__("request body cannot be retried without a rebuild_body function")


class NetworkError(TransportError):
    """Raised when the connection fails in a way that is never retried (DNS, TLS)."""

    def __init__(self, message: str, kind: str, cause: Exception | None = None):
        super().__init__(message, {"kind": kind})
        self.kind = kind
        self.__cause__ = cause


# ============================================================================
# Auth Errors
# ============================================================================


LOGIN_AGAIN_HINT = "run the login tool again"


class AuthError(TeamsBridgeError):
    """Base exception for authentication failures."""

    pass


class AuthRequiredError(AuthError):
    """Raised when stored credentials cannot be used and an interactive login is needed."""

    def __init__(self, reason: str):
        super().__init__(f"{reason}; {LOGIN_AGAIN_HINT}", {"reason": reason})
        self.reason = reason


class TokenExchangeError(AuthError):
    """Raised when the OAuth authorization-code exchange fails."""

    def __init__(self, status: int, body_snippet: str = ""):
        super().__init__(
            f"token exchange failed with status {status}",
            {"status": status, "body": body_snippet},
        )
        self.status = status
        self.body_snippet = body_snippet


class SkypeTokenError(AuthError):
    """Raised when the access token cannot be exchanged for a skypetoken."""

    def __init__(self, message: str, status: int = 0, body_snippet: str = ""):
        details: dict[str, Any] = {}
        if status:
            details["status"] = status
        if body_snippet:
            details["body"] = body_snippet
        super().__init__(message, details)
        self.status = status
        self.body_snippet = body_snippet


class MSALExtractionError(AuthError):
    """Raised when captured browser storage does not hold usable MSAL tokens."""

    pass


class TokenCaptureError(AuthError):
    """Raised when the token capture listener or paste input is unusable."""

    pass


# ============================================================================
# Consumer API Errors
# ============================================================================


class TeamsAPIError(TeamsBridgeError):
    """Terminal non-2xx response from the consumer chat API.

    Carries the HTTP status and a bounded body snippet for diagnostics.
    """

    operation = "teams request"

    def __init__(self, status: int, body_snippet: str = ""):
        super().__init__(
            f"{self.operation} failed with status {status}",
            {"status": status, "body": body_snippet} if body_snippet else {"status": status},
        )
        self.status = status
        self.body_snippet = body_snippet


class ConversationsError(TeamsAPIError):
    operation = "list conversations"


class MessagesError(TeamsAPIError):
    operation = "list messages"


class SendMessageError(TeamsAPIError):
    operation = "send message"


class ReactionError(TeamsAPIError):
    operation = "reaction"


class TypingError(TeamsAPIError):
    operation = "typing indicator"


class ReceiptError(TeamsAPIError):
    operation = "consumption horizon update"


class ConsumptionHorizonsError(TeamsAPIError):
    operation = "get consumption horizons"


# ============================================================================
# Graph Errors
# ============================================================================


class GraphAPIError(TeamsBridgeError):
    """Terminal non-2xx response from the file-storage API."""

    operation = "graph request"

    def __init__(self, status: int, body_snippet: str = ""):
        super().__init__(
            f"{self.operation} failed with status {status}",
            {"status": status, "body": body_snippet} if body_snippet else {"status": status},
        )
        self.status = status
        self.body_snippet = body_snippet


class GraphUploadError(GraphAPIError):
    operation = "graph upload"


class GraphUploadSessionError(GraphAPIError):
    operation = "graph create upload session"


class GraphChunkUploadError(GraphAPIError):
    operation = "graph chunk upload"


class GraphDriveItemError(GraphAPIError):
    operation = "graph get drive item"


class GraphCreateLinkError(GraphAPIError):
    operation = "graph create link"


class GraphDriveItemContentError(GraphAPIError):
    operation = "graph download drive item content"


class ResponseShapeError(TeamsBridgeError):
    """Raised when a 2xx response lacks fields the protocol requires. Never retried."""

    def __init__(self, message: str, field: str = ""):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class ContentTooLargeError(TeamsBridgeError):
    """Raised when content exceeds a configured size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"content size {size} exceeds limit {limit}", {"size": size, "limit": limit}
        )
        self.size = size
        self.limit = limit


# ============================================================================
# Bridge Errors
# ============================================================================


class BridgeError(TeamsBridgeError):
    """Base exception for synchronization and bridging failures."""

    pass


class ThreadNotFoundError(BridgeError):
    """Raised when a room has no known remote thread."""

    def __init__(self, room_id: str):
        super().__init__(f"no thread mapped for room: {room_id}", {"room_id": room_id})
        self.room_id = room_id


class SendError(BridgeError):
    """Raised when a chat-protocol send fails during ingestion."""

    pass


class MatrixNotFoundError(BridgeError):
    """Raised by a chat-protocol sender when the target event no longer exists."""

    pass


__all__ = [
    "TeamsBridgeError",
    "ConfigurationError",
    "ValidationError",
    "TransportError",
    "RetryableError",
    "RetryBodyMissingError",
    "NetworkError",
    "LOGIN_AGAIN_HINT",
    "AuthError",
    "AuthRequiredError",
    "TokenExchangeError",
    "SkypeTokenError",
    "MSALExtractionError",
    "TokenCaptureError",
    "TeamsAPIError",
    "ConversationsError",
    "MessagesError",
    "SendMessageError",
    "ReactionError",
    "TypingError",
    "ReceiptError",
    "ConsumptionHorizonsError",
    "GraphAPIError",
    "GraphUploadError",
    "GraphUploadSessionError",
    "GraphChunkUploadError",
    "GraphDriveItemError",
    "GraphCreateLinkError",
    "GraphDriveItemContentError",
    "ResponseShapeError",
    "ContentTooLargeError",
    "BridgeError",
    "ThreadNotFoundError",
    "SendError",
    "MatrixNotFoundError",
]
