"""
Reaction synchronization in both directions.

ReactionReconciler treats each listed message's reaction snapshot as the
source of truth: (emotion, user) pairs missing from the mapping store are
sent to Matrix, and stored mappings absent from the snapshot are redacted.
Running it twice over the same snapshot makes no calls the second time.

ReactionForwarder carries reactions made on the Matrix side to the remote
message they target.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

from teamsbridge.auth.state import AuthStateHolder, normalize_teams_user_id
from teamsbridge.bridge.threads import ThreadIndex
from teamsbridge.exceptions import MatrixNotFoundError
from teamsbridge.logging_config import get_logger
from teamsbridge.protocols import MatrixSender, MessageMapStore, ReactionMapping, ReactionMapStore
from teamsbridge.teams.client import ConsumerAPIClient
from teamsbridge.teams.emoji import emoji_to_emotion_key, emotion_key_to_emoji
from teamsbridge.teams.model import MessageReaction, RemoteMessage

logger = get_logger(__name__)

# Set on reactions the bridge itself sent into Matrix
INGESTED_REACTION_FLAG = "com.beeper.teams.ingested_reaction"


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_reaction_message_id(value: str) -> str:
    """Canonical message id for reaction bookkeeping ("msg/<digits>" for bare numbers)."""
    value = (value or "").strip()
    if not value:
        return ""
    if value.startswith("msg/") or "/" in value:
        return value
    if value.isascii() and value.isdigit():
        return "msg/" + value
    return value


def reaction_target_message_id(value: str) -> str:
    """Message id as the reactions endpoint expects it (no "msg/" prefix)."""
    normalized = normalize_reaction_message_id(value)
    if normalized.startswith("msg/"):
        return normalized[len("msg/") :]
    return normalized


@dataclass(frozen=True)
class ReactionKey:
    thread_id: str
    teams_message_id: str
    teams_user_id: str
    emotion_key: str

    @classmethod
    def build(
        cls, thread_id: str, teams_message_id: str, teams_user_id: str, emotion_key: str
    ) -> Optional["ReactionKey"]:
        key = cls(
            thread_id=(thread_id or "").strip(),
            teams_message_id=normalize_reaction_message_id(teams_message_id),
            teams_user_id=normalize_teams_user_id(teams_user_id),
            emotion_key=(emotion_key or "").strip(),
        )
        if not all((key.thread_id, key.teams_message_id, key.teams_user_id, key.emotion_key)):
            return None
        return key


def build_reaction_set(
    thread_id: str, teams_message_id: str, reactions: list[MessageReaction]
) -> dict[ReactionKey, int]:
    """Remote snapshot as {key: reaction time in ms (0 when unknown)}."""
    current: dict[ReactionKey, int] = {}
    for reaction in reactions:
        for user in reaction.users:
            key = ReactionKey.build(thread_id, teams_message_id, user.mri, reaction.emotion_key)
            if key is not None:
                current[key] = user.time_ms
    return current


class ReactionReconciler:
    """Diff remote reaction snapshots against stored mappings and apply the difference."""

    def __init__(self, sender: MatrixSender, messages: MessageMapStore, reactions: ReactionMapStore):
        self.sender = sender
        self.messages = messages
        self.reactions = reactions

    async def reconcile(
        self,
        thread_id: str,
        room_id: str,
        message: RemoteMessage,
        target_event_hint: str = "",
    ) -> tuple[int, int]:
        """Reconcile one message's reactions. Returns (added, removed).

        Per-reaction failures are logged and skipped; only a failure to read
        the stored mappings propagates.
        """
        teams_message_id = normalize_reaction_message_id(message.message_id) or normalize_reaction_message_id(
            message.sequence_id
        )
        if not thread_id or not teams_message_id:
            logger.warning("reaction reconcile skipped: missing ids", thread_id=thread_id)
            return 0, 0

        current = build_reaction_set(thread_id, teams_message_id, message.reactions)
        existing: dict[ReactionKey, ReactionMapping] = {}
        for mapping in await self.reactions.list_by_message(thread_id, teams_message_id):
            key = ReactionKey.build(
                mapping.thread_id, mapping.teams_message_id, mapping.teams_user_id, mapping.emotion_key
            )
            if key is not None:
                existing[key] = mapping

        target = target_event_hint
        if not target and any(key not in existing for key in current):
            found = await self.messages.get_by_remote_message_id(thread_id, teams_message_id)
            if found is None and teams_message_id != message.message_id and message.message_id:
                found = await self.messages.get_by_remote_message_id(thread_id, message.message_id)
            target = found.matrix_event_id if found else ""

        added = 0
        for key, time_ms in current.items():
            if key in existing:
                continue
            if await self._add(room_id, key, target, time_ms):
                added += 1

        removed = 0
        for key, mapping in existing.items():
            if key in current:
                continue
            if await self._remove(room_id, key, mapping):
                removed += 1
        return added, removed

    async def _add(self, room_id: str, key: ReactionKey, target: str, time_ms: int) -> bool:
        fields: dict[str, Any] = {
            "thread_id": key.thread_id,
            "teams_message_id": key.teams_message_id,
            "teams_user_id": key.teams_user_id,
            "emotion_key": key.emotion_key,
        }
        if not target:
            logger.warning("reaction dropped: no target event", **fields)
            return False
        symbol = emotion_key_to_emoji(key.emotion_key)
        if symbol is None:
            logger.info("reaction dropped: unmapped emotion key", **fields)
            return False
        if time_ms:
            fields["time_ms"] = time_ms
        logger.info("matrix reaction add attempt", target_event_id=target, **fields)
        try:
            event_id = await self.sender.send_reaction(room_id, target, symbol, key.teams_user_id)
        except Exception as e:
            logger.error("matrix reaction add failed", error=str(e), **fields)
            return False
        try:
            await self.reactions.insert(
                ReactionMapping(
                    thread_id=key.thread_id,
                    teams_message_id=key.teams_message_id,
                    teams_user_id=key.teams_user_id,
                    emotion_key=key.emotion_key,
                    room_id=room_id,
                    target_event_id=target,
                    reaction_event_id=event_id,
                    updated_ts_ms=_now_ms(),
                )
            )
        except Exception as e:
            logger.error("failed to persist reaction map", error=str(e), **fields)
            return False
        logger.info("matrix reaction added", reaction_event_id=event_id, **fields)
        return True

    async def _remove(self, room_id: str, key: ReactionKey, mapping: ReactionMapping) -> bool:
        fields: dict[str, Any] = {
            "thread_id": key.thread_id,
            "teams_message_id": key.teams_message_id,
            "teams_user_id": key.teams_user_id,
            "emotion_key": key.emotion_key,
            "reaction_event_id": mapping.reaction_event_id,
        }
        if mapping.reaction_event_id:
            logger.info("matrix reaction remove attempt", **fields)
            try:
                await self.sender.redact(mapping.room_id or room_id, mapping.reaction_event_id, key.teams_user_id)
            except MatrixNotFoundError:
                logger.info("matrix reaction already gone", **fields)
            except Exception as e:
                logger.error("matrix reaction remove failed", error=str(e), **fields)
                return False
        try:
            await self.reactions.delete(mapping)
        except Exception as e:
            logger.error("failed to delete reaction map", error=str(e), **fields)
            return False
        logger.info("matrix reaction removed", **fields)
        return True


@dataclass
class MatrixReaction:
    """A reaction or its redaction as received from the chat protocol."""

    room_id: str
    event_id: str
    sender: str = ""
    target_event_id: str = ""
    key: str = ""
    content: Optional[dict[str, Any]] = None


def is_ingested_reaction(reaction: MatrixReaction) -> bool:
    return bool(reaction.content) and reaction.content.get(INGESTED_REACTION_FLAG) is True


class ReactionForwarder:
    """Forward Matrix reactions (and their removal) to the remote service."""

    def __init__(
        self,
        client: ConsumerAPIClient,
        threads: ThreadIndex,
        messages: MessageMapStore,
        reactions: ReactionMapStore,
        auth: AuthStateHolder,
    ):
        self.client = client
        self.threads = threads
        self.messages = messages
        self.reactions = reactions
        self.auth = auth

    async def add(self, reaction: MatrixReaction) -> bool:
        """Forward one reaction. Returns False when it was dropped without a call.

        Raises:
            ThreadNotFoundError: The room has no mapped thread.
            TeamsAPIError: The remote call failed.
        """
        if is_ingested_reaction(reaction):
            logger.debug("reaction dropped: teams-ingested echo", room_id=reaction.room_id, event_id=reaction.event_id)
            return False
        thread_id = self.threads.require_thread_id(reaction.room_id)
        emotion_key = emoji_to_emotion_key(reaction.key)
        if emotion_key is None:
            logger.info("reaction dropped: unmapped emoji", room_id=reaction.room_id, emoji=reaction.key)
            return False
        mapping = await self.messages.get_by_local_event_id(reaction.target_event_id)
        if mapping is None or not mapping.teams_message_id:
            logger.info(
                "reaction dropped: no teams message for target",
                room_id=reaction.room_id,
                target_event_id=reaction.target_event_id,
            )
            return False
        teams_message_id = reaction_target_message_id(mapping.teams_message_id)
        fields = {
            "room_id": reaction.room_id,
            "thread_id": thread_id,
            "teams_message_id": teams_message_id,
            "emotion_key": emotion_key,
            "event_id": reaction.event_id,
        }
        logger.info("teams reaction add attempt", **fields)
        try:
            status = await self.client.add_reaction(thread_id, teams_message_id, emotion_key, _now_ms())
        except Exception as e:
            logger.error("teams reaction error", error=str(e), **fields)
            raise
        logger.info("teams reaction response", status=status, **fields)
        try:
            await self.reactions.insert(
                ReactionMapping(
                    thread_id=thread_id,
                    teams_message_id=normalize_reaction_message_id(mapping.teams_message_id),
                    teams_user_id=self.auth.teams_user_id(),
                    emotion_key=emotion_key,
                    room_id=reaction.room_id,
                    target_event_id=reaction.target_event_id,
                    reaction_event_id=reaction.event_id,
                    updated_ts_ms=_now_ms(),
                )
            )
        except Exception as e:
            logger.error("failed to persist teams reaction map", error=str(e), **fields)
        return True

    async def remove(self, room_id: str, redaction_event_id: str, redacted_event_id: str) -> bool:
        """Forward the redaction of a previously forwarded reaction.

        Returns False when the redacted event is not a known reaction.
        """
        thread_id = self.threads.require_thread_id(room_id)
        stored = await self.reactions.get_by_reaction_event_id(redacted_event_id)
        if stored is None:
            return False
        target = await self.messages.get_by_local_event_id(stored.target_event_id)
        if target is None or not target.teams_message_id:
            logger.info(
                "reaction dropped: no teams message for target",
                room_id=room_id,
                target_event_id=stored.target_event_id,
            )
            return False
        teams_message_id = reaction_target_message_id(target.teams_message_id)
        fields = {
            "room_id": room_id,
            "thread_id": thread_id,
            "teams_message_id": teams_message_id,
            "emotion_key": stored.emotion_key,
            "event_id": redaction_event_id,
            "reaction_event_id": redacted_event_id,
        }
        logger.info("teams reaction remove attempt", **fields)
        try:
            status = await self.client.remove_reaction(thread_id, teams_message_id, stored.emotion_key)
        except Exception as e:
            logger.error("teams reaction error", error=str(e), **fields)
            raise
        logger.info("teams reaction response", status=status, **fields)
        try:
            await self.reactions.delete(stored)
        except Exception as e:
            logger.error("failed to delete teams reaction map", error=str(e), **fields)
        return True
