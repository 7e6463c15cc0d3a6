"""
Data models for the consumer chat API.

Response payloads are loosely typed: sequence ids arrive as strings or
numbers, senders as URL strings or objects, content as strings or envelopes.
The parsers here normalize those shapes into plain dataclasses.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from teamsbridge.exceptions import ResponseShapeError

logger = logging.getLogger(__name__)

DEFAULT_ROOM_NAME = "Chat"


@dataclass
class ReactionUser:
    mri: str
    time_ms: int = 0


@dataclass
class MessageReaction:
    emotion_key: str
    users: list[ReactionUser] = field(default_factory=list)


@dataclass
class RemoteMessage:
    """A message as listed from a conversation."""

    message_id: str
    sequence_id: str
    sender_id: str = ""
    sender_name: str = ""
    im_display_name: str = ""
    token_display_name: str = ""
    client_message_id: str = ""
    timestamp: Optional[datetime] = None
    body: str = ""
    reactions: list[MessageReaction] = field(default_factory=list)

    def display_name(self) -> str:
        return (
            self.im_display_name
            or self.sender_name
            or self.token_display_name
            or self.sender_id
        )


def _parse_uint(value: str) -> Optional[int]:
    if not value or not value.isascii() or not value.isdigit():
        return None
    return int(value)


def compare_sequence_id(a: str, b: str) -> int:
    """Three-way compare of sequence ids.

    Numeric when both parse as unsigned integers, else lexicographic.
    """
    a_num, b_num = _parse_uint(a), _parse_uint(b)
    if a_num is not None and b_num is not None:
        return (a_num > b_num) - (a_num < b_num)
    return (a > b) - (a < b)


def normalize_sequence_id(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ValueError("invalid sequenceId")
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    raise ValueError("invalid sequenceId")


def extract_body(content: Any) -> str:
    """Plain-text body from a raw string or a {"text": ...} envelope, entity-decoded."""
    if isinstance(content, str):
        return html.unescape(content)
    if isinstance(content, dict):
        text = content.get("text")
        if isinstance(text, str):
            return html.unescape(text)
    return ""


def extract_sender_id(raw: Any) -> str:
    """Sender id from a contact URL (last path segment) or an {"id": ...} object."""
    if isinstance(raw, str):
        idx = raw.rfind("/")
        if 0 <= idx < len(raw) - 1:
            return raw[idx + 1 :].strip()
        return raw.strip()
    if isinstance(raw, dict):
        return str(raw.get("id") or "").strip()
    return ""


def extract_sender_name(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("displayName") or raw.get("name") or "")
    return ""


def _parse_reaction_time(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, (int, float)):
        return int(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return int(float(text))
        except ValueError:
            return 0
    return 0


def extract_reactions(properties: Any) -> list[MessageReaction]:
    """Reaction snapshot from message properties.emotions."""
    if not isinstance(properties, dict):
        return []
    emotions = properties.get("emotions")
    if not isinstance(emotions, list):
        return []
    reactions = []
    for emotion in emotions:
        if not isinstance(emotion, dict):
            continue
        key = str(emotion.get("key") or "").strip()
        if not key:
            continue
        users = []
        for user in emotion.get("users") or []:
            if not isinstance(user, dict):
                continue
            mri = str(user.get("mri") or "").strip()
            if mri:
                users.append(ReactionUser(mri=mri, time_ms=_parse_reaction_time(user.get("time"))))
        if users:
            reactions.append(MessageReaction(emotion_key=key, users=users))
    return reactions


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # fromisoformat on older interpreters accepts at most 6 fractional digits
    if "." in text:
        head, _, tail = text.partition(".")
        digits = "".join(ch for ch in tail if ch.isdigit())
        rest = tail[len(digits) :]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_remote_message(raw: dict[str, Any]) -> RemoteMessage:
    """Build a RemoteMessage from one entry of a messages listing.

    Raises:
        ValueError: sequenceId is neither a string nor an integer.
    """
    return RemoteMessage(
        message_id=str(raw.get("id") or ""),
        sequence_id=normalize_sequence_id(raw.get("sequenceId")),
        sender_id=extract_sender_id(raw.get("from")),
        sender_name=extract_sender_name(raw.get("from")),
        im_display_name=str(raw.get("imdisplayname") or ""),
        token_display_name=str(raw.get("fromDisplayNameInToken") or ""),
        client_message_id=str(raw.get("clientmessageid") or ""),
        timestamp=parse_timestamp(raw.get("originalarrivaltime")),
        body=extract_body(raw.get("content")),
        reactions=extract_reactions(raw.get("properties")),
    )


# ============================================================================
# Conversations
# ============================================================================


@dataclass
class Thread:
    """A normalized remote conversation."""

    id: str
    conversation_id: str
    type: str = ""
    created_at_raw: str = ""
    is_creator: bool = False
    is_one_to_one: bool = False
    room_name: str = ""


_NAME_FIELDS = ("topic", "threadTopic", "title", "displayName", "name")


def _member_id(member: dict[str, Any]) -> str:
    return str(member.get("id") or member.get("mri") or "").strip()


def _member_name(member: dict[str, Any]) -> str:
    return str(member.get("displayName") or member.get("name") or "").strip()


def normalize_participant_id(raw: str) -> str:
    """Lowercase and strip leading numeric MRI prefixes such as "8:"."""
    ident = (raw or "").strip().lower()
    while True:
        head, sep, tail = ident.partition(":")
        if not sep or not head or not tail or not head.isdigit():
            return ident
        ident = tail


def _is_bot(member_id: str) -> bool:
    lowered = member_id.lower()
    return lowered.startswith("28:") or "teamsbot" in lowered


class ConversationView:
    """Normalization helper over one raw conversation record."""

    def __init__(self, raw: dict[str, Any], self_user_id: str = ""):
        self.raw = raw
        self.thread_props = raw.get("threadProperties") or {}
        self.self_id = (self_user_id or "").strip()
        self.self_norm = normalize_participant_id(self.self_id)

    def members(self):
        for list_name in ("members", "participants", "consumers"):
            for member in self.raw.get(list_name) or []:
                if isinstance(member, dict):
                    yield member

    def is_self(self, member: dict[str, Any]) -> bool:
        if member.get("isSelf") or member.get("isCurrentUser"):
            return True
        member_id = _member_id(member)
        if self.self_id and member_id and member_id.lower() == self.self_id.lower():
            return True
        return bool(self.self_norm) and normalize_participant_id(member_id) == self.self_norm

    def thread_name(self) -> str:
        props = self.raw.get("properties") or {}
        for source in (self.thread_props, props, self.raw):
            for name in _NAME_FIELDS:
                value = str(source.get(name) or "").strip()
                if value:
                    return value
        return ""

    def self_names(self) -> set[str]:
        return {_member_name(m).lower() for m in self.members() if self.is_self(m) and _member_name(m)}

    def others(self):
        self_names = self.self_names()
        for member in self.members():
            member_id = _member_id(member)
            if self.is_self(member) or _is_bot(member_id):
                continue
            name = _member_name(member)
            yield member_id, name, name.lower() in self_names

    def is_likely_one_to_one(self) -> bool:
        if self.thread_name():
            return False
        keys = set()
        for member_id, name, named_like_self in self.others():
            if named_like_self:
                continue
            key = normalize_participant_id(member_id) or name.lower()
            if not key:
                continue
            keys.add(key)
            if len(keys) > 1:
                return False
        return len(keys) == 1

    def dm_name(self) -> str:
        fallback = ""
        for _member_id_, name, named_like_self in self.others():
            if not name:
                continue
            fallback = fallback or name
            if not named_like_self:
                return name
        return fallback


def normalize_conversation(raw: dict[str, Any], self_user_id: str = "") -> Optional[Thread]:
    """Normalize a conversation record; None when it has no canonical thread id."""
    view = ConversationView(raw, self_user_id)
    thread_id = str(view.thread_props.get("originalThreadId") or "").strip()
    if not thread_id:
        return None
    thread_type = str(view.thread_props.get("productThreadType") or "").strip()
    one_to_one = thread_type == "OneToOneChat" or view.is_likely_one_to_one()
    if one_to_one:
        room_name = view.dm_name()
    else:
        room_name = view.thread_name() or DEFAULT_ROOM_NAME
    return Thread(
        id=thread_id,
        conversation_id=str(raw.get("id") or "").strip(),
        type=thread_type,
        created_at_raw=str(view.thread_props.get("createdat") or ""),
        is_creator=bool(view.thread_props.get("isCreator")),
        is_one_to_one=one_to_one,
        room_name=room_name,
    )


# ============================================================================
# Consumption horizons
# ============================================================================


@dataclass
class ConsumptionHorizon:
    id: str
    consumption_horizon: str
    message_visibility_time: int = 0


def _parse_visibility_time(raw: Any) -> int:
    if raw is None or raw == "":
        return 0
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().isascii() and raw.strip().isdigit():
        return int(raw.strip())
    raise ResponseShapeError(
        f"messageVisibilityTime is not an integer: {raw!r}", "messageVisibilityTime"
    )


@dataclass
class ConsumptionHorizonsResponse:
    id: str = ""
    version: str = ""
    horizons: list[ConsumptionHorizon] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsumptionHorizonsResponse":
        horizons = [
            ConsumptionHorizon(
                id=str(h.get("id") or ""),
                consumption_horizon=str(h.get("consumptionhorizon") or ""),
                message_visibility_time=_parse_visibility_time(h.get("messageVisibilityTime")),
            )
            for h in data.get("consumptionhorizons") or []
            if isinstance(h, dict)
        ]
        return cls(id=str(data.get("id") or ""), version=str(data.get("version") or ""), horizons=horizons)


def parse_horizon_last_read_ts(horizon: str) -> Optional[int]:
    """Second field of a "version;lastReadTs;counter" horizon as a non-negative int."""
    parts = (horizon or "").split(";")
    if len(parts) < 2:
        return None
    value = parts[1].strip()
    if not value.isascii() or not value.isdigit():
        return None
    return int(value)
