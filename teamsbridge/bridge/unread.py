"""
Read receipts from Matrix to the remote service.

A receipt is pushed at most once per unread cycle: the cycle opens when new
remote messages arrive in a room and closes on the first receipt sent for it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional

from teamsbridge.bridge.threads import ThreadIndex
from teamsbridge.exceptions import ThreadNotFoundError
from teamsbridge.logging_config import get_logger
from teamsbridge.teams.client import ConsumerAPIClient, consumption_horizon_now

logger = get_logger(__name__)


@dataclass
class _UnreadState:
    unread: bool = False
    receipt_sent: bool = False


class UnreadCycleTracker:
    """Per-room gate that opens once per unread cycle. Safe to share between threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, _UnreadState] = {}

    def mark_unread(self, room_id: str) -> None:
        if not room_id:
            return
        with self._lock:
            self._states[room_id] = _UnreadState(unread=True, receipt_sent=False)

    def should_send_read_receipt(self, room_id: str) -> bool:
        """True exactly once after each mark_unread for the room."""
        if not room_id:
            return False
        with self._lock:
            state = self._states.get(room_id)
            if state is None or not state.unread or state.receipt_sent:
                return False
            state.unread = False
            state.receipt_sent = True
            return True


class ReadReceiptSender:
    def __init__(self, client: ConsumerAPIClient, threads: ThreadIndex, unread: UnreadCycleTracker):
        self.client = client
        self.threads = threads
        self.unread = unread

    async def send_read_receipt(self, room_id: str, now_ms: Optional[int] = None) -> bool:
        """Push a consumption horizon for the room's thread if its cycle is open.

        Returns False when the gate was closed and nothing was sent.

        Raises:
            ThreadNotFoundError: The room has no mapped thread.
            ReceiptError: The remote update failed.
        """
        if not self.unread.should_send_read_receipt(room_id):
            return False
        thread_id = self.threads.get_thread_id(room_id)
        if not thread_id:
            logger.warning("teams receipt missing thread id", room_id=room_id)
            raise ThreadNotFoundError(room_id)

        horizon = consumption_horizon_now(now_ms if now_ms is not None else int(time.time() * 1000))
        logger.info("teams receipt attempt", room_id=room_id, thread_id=thread_id, consumption_horizon=horizon)
        try:
            status = await self.client.set_consumption_horizon(thread_id, horizon)
        except Exception as e:
            logger.warning("teams receipt failed", error=str(e), room_id=room_id, thread_id=thread_id)
            raise
        logger.info("teams receipt response", room_id=room_id, thread_id=thread_id, status=status)
        return True
