"""
In-memory thread <-> room index and remote thread discovery.

ThreadIndex is read on every send, reaction and receipt, and written only
when threads are discovered or rooms created, so it sits behind a
readers-writer lock. Room creation is serialized per thread so two
concurrent discoveries of the same thread create one room.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from teamsbridge.exceptions import ThreadNotFoundError
from teamsbridge.protocols import MatrixSender, ThreadRecord, ThreadStore
from teamsbridge.teams.client import ConsumerAPIClient
from teamsbridge.teams.model import Thread

logger = logging.getLogger(__name__)


class RWLock:
    """Readers-writer lock: many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class ThreadRegistration:
    thread: Thread
    room_id: str


class ThreadIndex:
    """Thread/room lookup backed by a ThreadStore.

    Args:
        store: Durable thread -> room mapping.
        sender: Used to create rooms for threads seen for the first time.
    """

    def __init__(self, store: ThreadStore, sender: MatrixSender):
        self.store = store
        self.sender = sender
        self._lock = RWLock()
        self._room_by_thread: dict[str, str] = {}
        self._thread_by_room: dict[str, str] = {}
        self._conversation_by_thread: dict[str, str] = {}
        self._claims: dict[str, asyncio.Lock] = {}

    async def load(self) -> int:
        """Populate the index from the store. Returns the number of threads loaded."""
        records = await self.store.list_all()
        for record in records:
            self._remember(record.thread_id, record.room_id, record.conversation_id)
        logger.info(f"Loaded {len(records)} thread mappings")
        return len(records)

    def _remember(self, thread_id: str, room_id: str, conversation_id: str = "") -> None:
        with self._lock.write():
            self._room_by_thread[thread_id] = room_id
            self._thread_by_room[room_id] = thread_id
            if conversation_id:
                self._conversation_by_thread[thread_id] = conversation_id

    def get_thread_id(self, room_id: str) -> Optional[str]:
        with self._lock.read():
            return self._thread_by_room.get(room_id)

    def require_thread_id(self, room_id: str) -> str:
        thread_id = self.get_thread_id(room_id)
        if not thread_id:
            raise ThreadNotFoundError(room_id)
        return thread_id

    def get_room_id(self, thread_id: str) -> Optional[str]:
        with self._lock.read():
            return self._room_by_thread.get(thread_id)

    def records(self) -> list[ThreadRecord]:
        """Copy of every known mapping."""
        with self._lock.read():
            return [
                ThreadRecord(
                    thread_id=thread_id,
                    room_id=room_id,
                    conversation_id=self._conversation_by_thread.get(thread_id, ""),
                )
                for thread_id, room_id in self._room_by_thread.items()
            ]

    def _claim(self, thread_id: str) -> asyncio.Lock:
        with self._lock.write():
            claim = self._claims.get(thread_id)
            if claim is None:
                claim = asyncio.Lock()
                self._claims[thread_id] = claim
            return claim

    async def ensure_room(self, thread: Thread) -> tuple[str, bool]:
        """Return (room_id, created), creating the room on first sight of the thread."""
        async with self._claim(thread.id):
            room_id = self.get_room_id(thread.id) or await self.store.get_room_for_thread(thread.id)
            if room_id:
                await self.store.put(thread, room_id)
                self._remember(thread.id, room_id, thread.conversation_id)
                logger.debug(f"Room {room_id} already exists for thread {thread.id}")
                return room_id, False
            room_id = await self.sender.create_room(thread)
            await self.store.put(thread, room_id)
            self._remember(thread.id, room_id, thread.conversation_id)
            logger.info(f"Created room {room_id} for thread {thread.id}")
            return room_id, True

    async def refresh_threads(self, client: ConsumerAPIClient) -> tuple[int, list[ThreadRegistration]]:
        """Discover remote threads and register the new ones.

        Idempotent: threads that already have a room are not re-registered.

        Returns:
            (number of threads discovered, registrations for newly created rooms)
        """
        threads = await client.list_conversations()
        registrations = []
        for thread in threads:
            try:
                room_id, created = await self.ensure_room(thread)
            except Exception as e:
                logger.error(f"Failed to ensure room for discovered thread {thread.id}: {e}")
                raise
            if created:
                registrations.append(ThreadRegistration(thread=thread, room_id=room_id))
        logger.info(f"Thread discovery refresh complete: {len(threads)} discovered, {len(registrations)} new")
        return len(threads), registrations
