"""
Per-thread message synchronization into Matrix.

ThreadSyncEngine pulls a thread's message listing, delivers everything past
the persisted cursor in ascending sequence order and moves the cursor to the
last delivered message. Delivery stops at the first failed send without
touching the cursor, so a later sync resumes from the same point.

Messages at or below the cursor are still passed to the reaction reconciler,
since their reactions can change after delivery.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

from teamsbridge.auth.state import normalize_teams_user_id
from teamsbridge.bridge.reactions import ReactionReconciler
from teamsbridge.exceptions import ValidationError
from teamsbridge.logging_config import LogContext, get_logger, log_duration
from teamsbridge.protocols import (
    CursorStore,
    MatrixSender,
    MessageMapping,
    MessageMapStore,
    Profile,
    ProfileStore,
    SendIntentStore,
    ThreadRecord,
)
from teamsbridge.teams.client import ConsumerAPIClient
from teamsbridge.teams.model import RemoteMessage, compare_sequence_id

logger = get_logger(__name__)

PER_MESSAGE_PROFILE_KEY = "com.beeper.per_message_profile"


@dataclass
class SyncResult:
    messages_ingested: int = 0
    last_sequence_id: str = ""
    advanced: bool = False
    # set when delivery stopped at a failed send; the cursor was not moved
    send_error: Optional[Exception] = None


def message_timestamp_ms(message: RemoteMessage, now_ms: Optional[int] = None) -> int:
    if message.timestamp is not None:
        return int(message.timestamp.timestamp() * 1000)
    return now_ms if now_ms is not None else int(time.time() * 1000)


class ThreadSyncEngine:
    """Delivers new remote messages for one thread at a time.

    Args:
        client: Consumer API client used to list messages.
        sender: Chat-protocol sender.
        cursors: Last delivered sequence id per thread.
        messages: Remote message id -> Matrix event id map.
        intents: Outbound send intents, used to map echoes of our own sends.
        reactions: Optional reconciler run for every listed message.
        profiles: Optional display-name cache.
    """

    def __init__(
        self,
        client: ConsumerAPIClient,
        sender: MatrixSender,
        cursors: CursorStore,
        messages: MessageMapStore,
        intents: Optional[SendIntentStore] = None,
        reactions: Optional[ReactionReconciler] = None,
        profiles: Optional[ProfileStore] = None,
    ):
        self.client = client
        self.sender = sender
        self.cursors = cursors
        self.messages = messages
        self.intents = intents
        self.reactions = reactions
        self.profiles = profiles

    @log_duration()
    async def sync_thread(self, thread: ThreadRecord) -> SyncResult:
        """Deliver messages past the cursor and persist the new cursor.

        Raises:
            ValidationError: The thread record lacks a thread or room id.
            MessagesError: Listing failed after retries.
        """
        if not thread.thread_id:
            raise ValidationError("thread_id")
        if not thread.room_id:
            raise ValidationError("room_id")
        conversation_id = thread.conversation_id or thread.thread_id
        with LogContext(thread_id=thread.thread_id, room_id=thread.room_id):
            cursor = await self.cursors.get_cursor(thread.thread_id)
            logger.info("teams sync start", cursor=cursor or "")
            listed = await self.client.list_messages(conversation_id)
            logger.info("teams messages fetched", count=len(listed))

            result = await self._ingest(thread, listed, cursor)
            if result.advanced:
                await self.cursors.put_cursor(thread.thread_id, result.last_sequence_id)
            logger.info(
                "teams sync complete",
                messages_ingested=result.messages_ingested,
                last_sequence_id=result.last_sequence_id,
                advanced=result.advanced,
                send_failed=result.send_error is not None,
            )
            return result

    async def _ingest(
        self, thread: ThreadRecord, listed: list[RemoteMessage], cursor: Optional[str]
    ) -> SyncResult:
        ingested = 0
        last_success = ""
        for message in listed:
            if cursor and compare_sequence_id(message.sequence_id, cursor) <= 0:
                await self._reconcile(thread, message, "")
                continue
            if not message.body:
                logger.debug("teams message skipped empty body", seq=message.sequence_id)
                await self._reconcile(thread, message, "")
                continue

            logger.debug("teams message discovered", seq=message.sequence_id)
            sender_id = normalize_teams_user_id(message.sender_id)
            display_name = await self._display_name(message, sender_id)
            extra: Optional[dict[str, Any]] = None
            if sender_id and display_name:
                extra = {PER_MESSAGE_PROFILE_KEY: {"id": sender_id, "displayname": display_name}}

            try:
                event_id = await self.sender.send_text(thread.room_id, message.body, extra)
            except Exception as e:
                logger.error("failed to send matrix message", error=str(e), seq=message.sequence_id)
                return SyncResult(messages_ingested=ingested, send_error=e)
            ingested += 1

            mapped_event_id = await self._mapped_event_id(message, event_id)
            await self._record_mapping(thread, message, mapped_event_id, sender_id)
            await self._reconcile(thread, message, mapped_event_id)
            logger.debug("matrix message sent", seq=message.sequence_id, event_id=event_id)
            last_success = message.sequence_id

        if not last_success:
            return SyncResult(messages_ingested=ingested)
        return SyncResult(messages_ingested=ingested, last_sequence_id=last_success, advanced=True)

    async def _display_name(self, message: RemoteMessage, sender_id: str) -> str:
        profile = None
        if self.profiles is not None and sender_id.startswith("8:"):
            profile = await self._ensure_profile(message, sender_id)
        if profile is not None and profile.display_name:
            return profile.display_name
        return message.im_display_name or message.token_display_name or sender_id

    async def _ensure_profile(self, message: RemoteMessage, sender_id: str) -> Optional[Profile]:
        seen_ms = message_timestamp_ms(message)
        profile = await self.profiles.get(sender_id)
        if profile is None:
            profile = Profile(teams_user_id=sender_id, display_name=message.im_display_name, last_seen_ms=seen_ms)
            try:
                if await self.profiles.insert_if_missing(profile):
                    logger.info(
                        "teams profile inserted",
                        teams_user_id=sender_id,
                        display_name=profile.display_name,
                    )
            except Exception as e:
                logger.error("failed to insert teams profile", error=str(e), teams_user_id=sender_id)
        if message.im_display_name and profile.display_name != message.im_display_name:
            try:
                await self.profiles.update_display_name(sender_id, message.im_display_name, seen_ms)
                logger.info(
                    "teams profile display name updated",
                    teams_user_id=sender_id,
                    old_display_name=profile.display_name,
                    new_display_name=message.im_display_name,
                )
            except Exception as e:
                logger.error("failed to update teams profile display name", error=str(e), teams_user_id=sender_id)
            profile.display_name = message.im_display_name
            profile.last_seen_ms = seen_ms
        return profile

    async def _mapped_event_id(self, message: RemoteMessage, event_id: str) -> str:
        # Echo of one of our own sends: map it to the original Matrix event
        if message.client_message_id and self.intents is not None:
            intent = await self.intents.get_by_client_message_id(message.client_message_id)
            if intent is not None and intent.matrix_event_id:
                return intent.matrix_event_id
        return event_id

    async def _record_mapping(
        self, thread: ThreadRecord, message: RemoteMessage, event_id: str, sender_id: str
    ) -> None:
        if not message.message_id or not event_id:
            return
        try:
            await self.messages.upsert(
                MessageMapping(
                    matrix_event_id=event_id,
                    thread_id=thread.thread_id,
                    teams_message_id=message.message_id,
                    message_ts_ms=message_timestamp_ms(message),
                    sender_id=sender_id,
                )
            )
        except Exception as e:
            logger.error(
                "failed to persist teams message map",
                error=str(e),
                teams_message_id=message.message_id,
                event_id=event_id,
            )

    async def _reconcile(self, thread: ThreadRecord, message: RemoteMessage, target_event_id: str) -> None:
        if self.reactions is None:
            return
        try:
            await self.reactions.reconcile(thread.thread_id, thread.room_id, message, target_event_id)
        except Exception as e:
            logger.error(
                "failed to ingest teams reactions",
                error=str(e),
                teams_message_id=message.message_id,
                seq=message.sequence_id,
            )
