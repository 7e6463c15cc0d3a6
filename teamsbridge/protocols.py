"""
Protocol definitions for the bridge's persistence and chat-protocol seams.

The synchronization core never talks to a database or to the chat protocol
directly; it goes through these interfaces, which lets tests use in-memory
fakes and lets deployments plug in their own storage.

Usage:
    from teamsbridge.protocols import CursorStore, MatrixSender

    async def deliver(sender: MatrixSender, room_id: str, body: str) -> str:
        return await sender.send_text(room_id, body, None)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from teamsbridge.teams.model import Thread

# ============================================================================
# Records
# ============================================================================


class SendStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    FAILED = "failed"


@dataclass
class SendIntent:
    """An outbound message tracked from before the remote send until its outcome."""

    thread_id: str
    client_message_id: str
    timestamp_ms: int
    status: SendStatus = SendStatus.PENDING
    matrix_event_id: str = ""
    intent_user_id: str = ""


@dataclass
class ReactionMapping:
    """Links one (thread, message, user, emotion) reaction with its Matrix event."""

    thread_id: str
    teams_message_id: str
    teams_user_id: str
    emotion_key: str
    room_id: str = ""
    target_event_id: str = ""
    reaction_event_id: str = ""
    updated_ts_ms: int = 0


@dataclass
class MessageMapping:
    matrix_event_id: str
    thread_id: str
    teams_message_id: str
    message_ts_ms: int = 0
    sender_id: str = ""


@dataclass
class ConsumptionHorizonRecord:
    thread_id: str
    teams_user_id: str
    last_read_ts: int


@dataclass
class ThreadRecord:
    thread_id: str
    room_id: str
    conversation_id: str = ""


@dataclass
class Profile:
    teams_user_id: str
    display_name: str = ""
    last_seen_ms: int = 0


# ============================================================================
# Stores
# ============================================================================


@runtime_checkable
class SendIntentStore(Protocol):
    async def insert(self, intent: SendIntent) -> None:
        ...

    async def update_status(self, client_message_id: str, status: SendStatus) -> None:
        ...

    async def clear_intent_ref(self, client_message_id: str) -> None:
        """Drop the sending user's reference once the send has settled."""
        ...

    async def get_by_client_message_id(self, client_message_id: str) -> Optional[SendIntent]:
        ...


@runtime_checkable
class ReactionMapStore(Protocol):
    """Reaction mappings in both directions.

    Mappings are keyed by (thread_id, teams_message_id, teams_user_id,
    emotion_key); reactions forwarded from Matrix are stored under the
    bridge user's own id so the next remote snapshot does not echo them.
    """

    async def get_by_mapping_key(
        self, thread_id: str, teams_message_id: str, teams_user_id: str, emotion_key: str
    ) -> Optional[ReactionMapping]:
        ...

    async def get_by_reaction_event_id(self, reaction_event_id: str) -> Optional[ReactionMapping]:
        ...

    async def list_by_message(self, thread_id: str, teams_message_id: str) -> list[ReactionMapping]:
        ...

    async def insert(self, mapping: ReactionMapping) -> None:
        """Insert or replace the mapping for its key."""
        ...

    async def delete(self, mapping: ReactionMapping) -> None:
        """Delete by key; deleting a missing mapping is not an error."""
        ...


@runtime_checkable
class ConsumptionHorizonStore(Protocol):
    async def get(self, thread_id: str, teams_user_id: str) -> Optional[ConsumptionHorizonRecord]:
        ...

    async def upsert_last_read(self, thread_id: str, teams_user_id: str, last_read_ts: int) -> None:
        ...


@runtime_checkable
class ThreadStore(Protocol):
    async def get_room_for_thread(self, thread_id: str) -> Optional[str]:
        ...

    async def get_thread_for_room(self, room_id: str) -> Optional[str]:
        ...

    async def put(self, thread: Thread, room_id: str) -> None:
        ...

    async def list_all(self) -> list[ThreadRecord]:
        ...


@runtime_checkable
class MessageMapStore(Protocol):
    async def get_by_local_event_id(self, matrix_event_id: str) -> Optional[MessageMapping]:
        ...

    async def get_by_remote_message_id(
        self, thread_id: str, teams_message_id: str
    ) -> Optional[MessageMapping]:
        ...

    async def get_latest_self_authored_before(
        self, thread_id: str, max_ts_ms: int, self_user_id: str
    ) -> Optional[MessageMapping]:
        """Latest message sent by `self_user_id` with a timestamp at or before max_ts_ms."""
        ...

    async def upsert(self, mapping: MessageMapping) -> None:
        ...


@runtime_checkable
class CursorStore(Protocol):
    async def get_cursor(self, thread_id: str) -> Optional[str]:
        ...

    async def put_cursor(self, thread_id: str, sequence_id: str) -> None:
        ...


@runtime_checkable
class ProfileStore(Protocol):
    """Optional remote-user profile cache used for display names."""

    async def get(self, teams_user_id: str) -> Optional[Profile]:
        ...

    async def insert_if_missing(self, profile: Profile) -> bool:
        ...

    async def update_display_name(self, teams_user_id: str, display_name: str, last_seen_ms: int) -> None:
        ...


# ============================================================================
# Chat protocol
# ============================================================================


@runtime_checkable
class MatrixSender(Protocol):
    """Outbound operations on the chat-protocol side.

    `sender_id` names the remote user to puppet; empty means the bridge bot.
    `send_text` raises SendError when the homeserver rejects the message.
    `send_reaction` sets `com.beeper.teams.ingested_reaction` in the event content so the
    reaction is not forwarded back.
    `redact` raises MatrixNotFoundError when the event no longer exists.
    """

    async def send_text(self, room_id: str, body: str, extra: Optional[dict[str, Any]]) -> str:
        ...

    async def send_reaction(
        self, room_id: str, target_event_id: str, symbol: str, sender_id: str = ""
    ) -> str:
        ...

    async def redact(self, room_id: str, event_id: str, sender_id: str = "") -> None:
        ...

    async def set_read_markers(self, room_id: str, event_id: str) -> None:
        ...

    async def create_room(self, thread: Thread) -> str:
        ...


__all__ = [
    "SendStatus",
    "SendIntent",
    "ReactionMapping",
    "MessageMapping",
    "ConsumptionHorizonRecord",
    "ThreadRecord",
    "Profile",
    "SendIntentStore",
    "ReactionMapStore",
    "ConsumptionHorizonStore",
    "ThreadStore",
    "MessageMapStore",
    "CursorStore",
    "ProfileStore",
    "MatrixSender",
]
