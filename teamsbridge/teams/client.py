"""
Typed client for the consumer chat API.

Every call authenticates with the skypetoken held by an AuthStateHolder and
runs through a RequestExecutor, so 429/5xx responses are retried and other
non-2xx responses surface as the endpoint's own TeamsAPIError subclass.
"""

from __future__ import annotations

import functools
import html
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional, Type
from urllib.parse import quote

import aiohttp

from teamsbridge.auth.state import AuthStateHolder, normalize_teams_user_id
from teamsbridge.exceptions import (
    ConsumptionHorizonsError,
    ConversationsError,
    MessagesError,
    ReactionError,
    ReceiptError,
    ResponseShapeError,
    SendMessageError,
    TeamsAPIError,
    TypingError,
    ValidationError,
)
from teamsbridge.executor import HTTPResponse, PreparedRequest, RequestExecutor, classify_status
from teamsbridge.logging_config import LogContext
from teamsbridge.teams.model import (
    ConsumptionHorizonsResponse,
    RemoteMessage,
    Thread,
    compare_sequence_id,
    normalize_conversation,
    parse_remote_message,
)

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATIONS_URL = "https://teams.live.com/api/chatsvc/consumer/v1/users/ME/conversations"
DEFAULT_MESSAGES_URL = "https://msgapi.teams.live.com/v1/users/ME/conversations"
DEFAULT_SEND_MESSAGES_URL = "https://teams.live.com/api/chatsvc/consumer/v1/users/ME/conversations"
DEFAULT_CONSUMPTION_HORIZONS_URL = "https://teams.live.com/api/chatsvc/consumer/v1/threads"

_client_message_lock = threading.Lock()
_last_client_message_id = 0


def generate_client_message_id() -> str:
    """Strictly increasing nanosecond-based id, unique within the process."""
    global _last_client_message_id
    with _client_message_lock:
        now = time.time_ns()
        if now <= _last_client_message_id:
            now = _last_client_message_id + 1
        _last_client_message_id = now
        return str(now)


def format_html_content(text: str) -> str:
    """Render plain text as the RichText/Html body the service expects."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    escaped = html.escape(normalized, quote=True).replace("\n", "<br>")
    return f"<p>{escaped}</p>"


def consumption_horizon_now(now_ms: Optional[int] = None) -> str:
    """Horizon string marking everything up to now as read."""
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{ms};{ms};0"


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _path(segment: str) -> str:
    return quote(segment, safe="")


def _require(value: str, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(field)
    return value


class ConsumerAPIClient:
    """Consumer chat API operations.

    Args:
        session: aiohttp session shared with other clients.
        auth: Holder supplying the current skypetoken.
        executor: Optional executor; defaults to the standard retry budget.
        conversations_url, messages_url, send_messages_url, consumption_horizons_url:
            Endpoint base overrides, mainly for tests.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        auth: AuthStateHolder,
        executor: Optional[RequestExecutor] = None,
        conversations_url: str = DEFAULT_CONVERSATIONS_URL,
        messages_url: str = DEFAULT_MESSAGES_URL,
        send_messages_url: str = DEFAULT_SEND_MESSAGES_URL,
        consumption_horizons_url: str = DEFAULT_CONSUMPTION_HORIZONS_URL,
    ):
        self.auth = auth
        self.executor = executor or RequestExecutor(session)
        self.conversations_url = conversations_url.rstrip("/")
        self.messages_url = messages_url.rstrip("/")
        self.send_messages_url = send_messages_url.rstrip("/")
        self.consumption_horizons_url = consumption_horizons_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "authentication": f"skypetoken={self.auth.skype_token()}",
            "Accept": "application/json",
        }

    async def _get_json(self, url: str, error_type: Type[TeamsAPIError]) -> dict[str, Any]:
        """GET a JSON object; an empty body reads as {}."""
        request = PreparedRequest("GET", url, self._headers())
        response = await self.executor.execute(request, classify_status(error_type))
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ResponseShapeError(f"{error_type.operation}: response is not JSON") from e
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ResponseShapeError(
                f"{error_type.operation}: expected a JSON object, got {type(payload).__name__}"
            )
        return payload

    async def _send_json(
        self,
        method: str,
        url: str,
        payload: Any,
        error_type: Type[TeamsAPIError],
    ) -> HTTPResponse:
        request = PreparedRequest.with_json(method, url, payload, self._headers())
        return await self.executor.execute(request, classify_status(error_type))

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_conversations(self) -> list[Thread]:
        """List conversations, dropping records without a canonical thread id."""
        payload = await self._get_json(self.conversations_url, ConversationsError)
        self_user_id = self.auth.teams_user_id()
        threads = []
        for raw in payload.get("conversations") or []:
            if not isinstance(raw, dict):
                continue
            thread = normalize_conversation(raw, self_user_id)
            if thread is None:
                logger.warning(f"Skipping conversation without originalThreadId: {raw.get('id')}")
                continue
            threads.append(thread)
        return threads

    async def list_messages(
        self, conversation_id: str, since_sequence: Optional[str] = None
    ) -> list[RemoteMessage]:
        """List a conversation's messages in ascending sequence order.

        Args:
            conversation_id: Remote conversation/thread id.
            since_sequence: When given, only messages with a greater sequence id
                are returned.

        Raises:
            ValueError: A message carries an unparseable sequenceId.
            MessagesError: Terminal non-2xx response.
        """
        conversation_id = _require(conversation_id, "conversation id")
        url = f"{self.messages_url}/{_path(conversation_id)}/messages"
        with LogContext(thread_id=conversation_id, operation="teams list messages"):
            payload = await self._get_json(url, MessagesError)
        messages = []
        for raw in payload.get("messages") or []:
            if not isinstance(raw, dict):
                continue
            message = parse_remote_message(raw)
            message.sender_id = normalize_teams_user_id(message.sender_id)
            if not message.sender_id:
                logger.debug(f"Teams message {message.message_id} missing sender id")
            messages.append(message)
        messages.sort(key=functools.cmp_to_key(lambda a, b: compare_sequence_id(a.sequence_id, b.sequence_id)))
        if since_sequence:
            messages = [m for m in messages if compare_sequence_id(m.sequence_id, since_sequence) > 0]
        return messages

    async def get_consumption_horizons(self, thread_id: str) -> ConsumptionHorizonsResponse:
        thread_id = _require(thread_id, "thread id")
        url = f"{self.consumption_horizons_url}/{_path(thread_id)}/consumptionhorizons"
        with LogContext(thread_id=thread_id, operation="teams consumption horizons"):
            payload = await self._get_json(url, ConsumptionHorizonsError)
        return ConsumptionHorizonsResponse.from_dict(payload)

    # =========================================================================
    # Writes
    # =========================================================================

    def _messages_endpoint(self, thread_id: str) -> str:
        if "@thread.v2" not in thread_id:
            logger.warning(f"Teams thread id missing @thread.v2: {thread_id}")
        return f"{self.send_messages_url}/{_path(thread_id)}/messages"

    @staticmethod
    def _message_payload(
        thread_id: str, message_type: str, from_user_id: str, client_message_id: str
    ) -> dict[str, Any]:
        now = _rfc3339_now()
        return {
            "type": "Message",
            "conversationid": thread_id,
            "messagetype": message_type,
            "contenttype": "Text",
            "clientmessageid": client_message_id,
            "composetime": now,
            "originalarrivaltime": now,
            "from": from_user_id,
            "fromUserId": from_user_id,
        }

    async def send_message(
        self, thread_id: str, text: str, from_user_id: str, client_message_id: str
    ) -> int:
        """Send a plain-text message rendered as HTML. Returns the HTTP status."""
        thread_id = _require(thread_id, "thread id")
        if not (text or "").strip():
            raise ValidationError("message text")
        from_user_id = _require(from_user_id, "from user id")
        client_message_id = _require(client_message_id, "client message id")

        payload = self._message_payload(thread_id, "RichText/Html", from_user_id, client_message_id)
        payload["content"] = format_html_content(text)
        with LogContext(thread_id=thread_id, client_message_id=client_message_id):
            response = await self._send_json(
                "POST", self._messages_endpoint(thread_id), payload, SendMessageError
            )
        return response.status

    async def send_attachment_message(
        self,
        thread_id: str,
        html_content: str,
        files_property: str,
        from_user_id: str,
        client_message_id: str,
    ) -> int:
        """Send a message carrying a serialized `properties.files` descriptor.

        The HTML content may be empty when there is no caption.
        """
        thread_id = _require(thread_id, "thread id")
        files_property = _require(files_property, "files property")
        from_user_id = _require(from_user_id, "from user id")
        client_message_id = _require(client_message_id, "client message id")

        payload = self._message_payload(thread_id, "RichText/Html", from_user_id, client_message_id)
        payload["content"] = html_content
        payload["properties"] = {"files": files_property}
        with LogContext(
            thread_id=thread_id,
            client_message_id=client_message_id,
            operation="teams send attachment",
        ):
            response = await self._send_json(
                "POST", self._messages_endpoint(thread_id), payload, SendMessageError
            )
        return response.status

    async def send_typing(self, thread_id: str, from_user_id: str) -> int:
        thread_id = _require(thread_id, "thread id")
        from_user_id = _require(from_user_id, "from user id")
        client_message_id = generate_client_message_id()
        payload = self._message_payload(thread_id, "Control/Typing", from_user_id, client_message_id)
        with LogContext(
            thread_id=thread_id, client_message_id=client_message_id, operation="teams typing"
        ):
            response = await self._send_json(
                "POST", self._messages_endpoint(thread_id), payload, TypingError
            )
        return response.status

    def _reaction_endpoint(self, thread_id: str, message_id: str) -> str:
        return (
            f"{self.send_messages_url}/{_path(thread_id)}/messages/{_path(message_id)}"
            "/properties?name=emotions"
        )

    async def add_reaction(
        self, thread_id: str, message_id: str, emotion_key: str, applied_at_ms: int
    ) -> int:
        thread_id = _require(thread_id, "thread id")
        message_id = _require(message_id, "teams message id")
        emotion_key = _require(emotion_key, "emotion key")
        if not applied_at_ms:
            raise ValidationError("applied timestamp")
        payload = {"emotions": {"key": emotion_key, "value": applied_at_ms}}
        with LogContext(
            thread_id=thread_id,
            teams_message_id=message_id,
            emotion_key=emotion_key,
            operation="teams add reaction",
        ):
            response = await self._send_json(
                "PUT", self._reaction_endpoint(thread_id, message_id), payload, ReactionError
            )
        return response.status

    async def remove_reaction(self, thread_id: str, message_id: str, emotion_key: str) -> int:
        thread_id = _require(thread_id, "thread id")
        message_id = _require(message_id, "teams message id")
        emotion_key = _require(emotion_key, "emotion key")
        payload = {"emotions": {"key": emotion_key}}
        with LogContext(
            thread_id=thread_id,
            teams_message_id=message_id,
            emotion_key=emotion_key,
            operation="teams remove reaction",
        ):
            response = await self._send_json(
                "DELETE", self._reaction_endpoint(thread_id, message_id), payload, ReactionError
            )
        return response.status

    async def set_consumption_horizon(self, thread_id: str, horizon: str) -> int:
        """Mark the thread read up to `horizon` (see consumption_horizon_now)."""
        thread_id = _require(thread_id, "thread id")
        horizon = _require(horizon, "consumption horizon")
        url = f"{self.send_messages_url}/{_path(thread_id)}/properties?name=consumptionhorizon"
        with LogContext(thread_id=thread_id, operation="teams read receipt"):
            response = await self._send_json(
                "PUT", url, {"consumptionhorizon": horizon}, ReceiptError
            )
        return response.status


__all__ = [
    "ConsumerAPIClient",
    "generate_client_message_id",
    "format_html_content",
    "consumption_horizon_now",
]
