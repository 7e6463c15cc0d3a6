"""
Remote read-state ingestion.

A consumption horizon is the remote service's "read up to" marker. When the
single remote participant of a chat advances theirs, the bridge moves the
Matrix read marker to the latest message the bridge user authored at or
before that point. Group chats are skipped.
"""

from __future__ import annotations

from typing import Optional

from teamsbridge.auth.state import AuthStateHolder, normalize_teams_user_id
from teamsbridge.exceptions import ValidationError
from teamsbridge.logging_config import get_logger
from teamsbridge.protocols import ConsumptionHorizonStore, MatrixSender, MessageMapStore
from teamsbridge.teams.client import ConsumerAPIClient
from teamsbridge.teams.model import ConsumptionHorizon, parse_horizon_last_read_ts

logger = get_logger(__name__)


class ConsumptionHorizonIngestor:
    def __init__(
        self,
        client: ConsumerAPIClient,
        messages: MessageMapStore,
        state: ConsumptionHorizonStore,
        sender: MatrixSender,
        auth: AuthStateHolder,
    ):
        self.client = client
        self.messages = messages
        self.state = state
        self.sender = sender
        self.auth = auth

    async def poll_once(self, thread_id: str, room_id: str) -> bool:
        """Fetch the thread's horizons and apply a newer remote read position.

        Returns True when the stored horizon advanced. A read-marker failure
        is logged; a failure to persist the horizon is raised.
        """
        thread_id = (thread_id or "").strip()
        if not thread_id:
            raise ValidationError("thread id")
        if not room_id:
            raise ValidationError("room id")
        self_id = normalize_teams_user_id(self.auth.teams_user_id())
        if not self_id:
            raise ValidationError("self user id")

        response = await self.client.get_consumption_horizons(thread_id)
        remote = self._single_remote(response.horizons, self_id, thread_id, room_id)
        if remote is None:
            return False
        remote_id, horizon = remote

        latest = parse_horizon_last_read_ts(horizon.consumption_horizon)
        if not latest:
            return False
        existing = await self.state.get(thread_id, remote_id)
        if existing is not None and latest <= existing.last_read_ts:
            return False

        mapping = await self.messages.get_latest_self_authored_before(thread_id, latest, self_id)
        marker_requested = mapping is not None and bool(mapping.matrix_event_id)
        marker_error: Optional[Exception] = None
        if marker_requested:
            try:
                await self.sender.set_read_markers(room_id, mapping.matrix_event_id)
            except Exception as e:
                marker_error = e

        persist_error: Optional[Exception] = None
        try:
            await self.state.upsert_last_read(thread_id, remote_id, latest)
        except Exception as e:
            persist_error = e

        fields = {
            "thread_id": thread_id,
            "room_id": room_id,
            "teams_user_id": remote_id,
            "latest_read_ts": latest,
            "marker_requested": marker_requested,
            "marker_sent": marker_requested and marker_error is None,
        }
        if marker_requested:
            fields["event_id"] = mapping.matrix_event_id
        error = marker_error or persist_error
        if error is not None:
            logger.warning("consumption horizon advanced", error=str(error), **fields)
        else:
            logger.info("consumption horizon advanced", **fields)

        if persist_error is not None:
            raise persist_error
        return True

    @staticmethod
    def _single_remote(
        horizons: list[ConsumptionHorizon], self_id: str, thread_id: str, room_id: str
    ) -> Optional[tuple[str, ConsumptionHorizon]]:
        remote = None
        count = 0
        for entry in horizons:
            entry_id = normalize_teams_user_id(entry.id)
            if not entry_id or entry_id == self_id:
                continue
            count += 1
            if count > 1:
                logger.info(
                    "skipping consumption horizons with multiple remote participants",
                    thread_id=thread_id,
                    room_id=room_id,
                    non_self_count=count,
                )
                return None
            remote = (entry_id, entry)
        return remote
