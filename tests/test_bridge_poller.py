"""
Tests for teamsbridge.bridge.poller.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from teamsbridge.bridge.poller import ThreadPoller, is_pollable
from teamsbridge.bridge.sync import SyncResult, ThreadSyncEngine
from teamsbridge.bridge.unread import UnreadCycleTracker
from teamsbridge.config import PollBackoffConfig
from teamsbridge.exceptions import AuthRequiredError, ConversationsError, MessagesError, RetryableError
from teamsbridge.protocols import ThreadRecord
from teamsbridge.teams.model import RemoteMessage
from tests.conftest import ROOM_ID, THREAD_ID


def _poller(auth_holder, sync_results=None, horizons=None, unread=None, sleep=None, threads=None):
    auth_client = MagicMock()
    auth_client.ensure_skype_token = AsyncMock(return_value="skype-token")
    sync = MagicMock()
    sync.sync_thread = AsyncMock(side_effect=sync_results or [SyncResult()])
    if threads is None:
        threads = MagicMock()
        threads.refresh_threads = AsyncMock(return_value=(0, []))
        threads.records = MagicMock(return_value=[])
    return ThreadPoller(
        auth_client,
        auth_holder,
        MagicMock(),
        threads,
        sync,
        horizons=horizons,
        unread=unread,
        config=PollBackoffConfig(),
        refresh_interval=0.01,
        sleep=sleep or AsyncMock(),
    )


def _message(seq):
    return RemoteMessage(
        message_id=f"17000000000{seq}",
        sequence_id=str(seq),
        sender_id="8:live:alice",
        body=f"message {seq}",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def _cancel_after(count):
    """Sleep stand-in that records delays and cancels on the count-th call."""
    delays = []

    async def sleep(delay):
        delays.append(delay)
        if len(delays) >= count:
            raise asyncio.CancelledError()

    return sleep, delays


def _blocking_sleep():
    """Sleep stand-in that never returns, keeping a started task alive until stop()."""
    blocker = asyncio.Event()

    async def sleep(_delay):
        await blocker.wait()

    return sleep


class TestIsPollable:
    """Tests for the pollable-thread filter."""

    def test_requires_room_and_thread_suffix(self):
        """Only mapped @thread.v2 threads are polled."""
        assert is_pollable(ThreadRecord(THREAD_ID, ROOM_ID))
        assert not is_pollable(ThreadRecord(THREAD_ID, ""))
        assert not is_pollable(ThreadRecord("48:notes", ROOM_ID))


class TestPollOnce:
    """Tests for a single poll pass."""

    @pytest.mark.asyncio
    async def test_ingest_opens_unread_cycle(self, auth_holder, thread_record):
        """Delivered messages start an unread cycle for the room."""
        unread = UnreadCycleTracker()
        poller = _poller(auth_holder, [SyncResult(2, "5", True)], unread=unread)

        result, error = await poller.poll_once(thread_record)

        assert (result.messages_ingested, error) == (2, None)
        assert unread.should_send_read_receipt(ROOM_ID)

    @pytest.mark.asyncio
    async def test_sync_error_is_returned(self, auth_holder, thread_record):
        """Sync failures are returned for backoff, not raised."""
        failure = MessagesError(500)
        poller = _poller(auth_holder, [failure])

        result, error = await poller.poll_once(thread_record)

        assert error is failure
        assert result.messages_ingested == 0

    @pytest.mark.asyncio
    async def test_auth_errors_propagate(self, auth_holder, thread_record):
        """Authentication loss is raised."""
        poller = _poller(auth_holder, [AuthRequiredError("expired")])
        with pytest.raises(AuthRequiredError):
            await poller.poll_once(thread_record)

    @pytest.mark.asyncio
    async def test_horizon_errors_are_logged(self, auth_holder, thread_record):
        """A horizon failure does not fail the poll."""
        horizons = MagicMock()
        horizons.poll_once = AsyncMock(side_effect=RuntimeError("horizons down"))
        poller = _poller(auth_holder, [SyncResult()], horizons=horizons)

        _, error = await poller.poll_once(thread_record)

        assert error is None
        horizons.poll_once.assert_awaited_once_with(THREAD_ID, ROOM_ID)


class TestRunThread:
    """Tests for the per-thread loop."""

    @pytest.mark.asyncio
    async def test_backoff_delays(self, auth_holder, thread_record):
        """Delays follow the outcome of each poll."""
        sleep, delays = _cancel_after(4)
        poller = _poller(
            auth_holder,
            [
                SyncResult(1, "1", True),
                SyncResult(),
                RetryableError(status=429, retry_after=7.0),
                RetryableError(status=503),
            ],
            sleep=sleep,
        )

        with pytest.raises(asyncio.CancelledError):
            await poller.run_thread(thread_record)

        assert delays == [2.0, 4.0, 7.0, 4.0]
        assert poller.auth_client.ensure_skype_token.await_count == 4

    @pytest.mark.asyncio
    async def test_stalled_send_backs_off(
        self, auth_holder, thread_record, matrix_sender, cursor_store, message_map
    ):
        """A message that keeps failing to send counts as a failure, not a success."""
        listing = [_message(1), _message(2)]
        client = MagicMock()
        client.list_messages = AsyncMock(return_value=listing)
        matrix_sender.fail_bodies.add("message 2")
        unread = UnreadCycleTracker()
        sleep, delays = _cancel_after(4)
        poller = _poller(auth_holder, unread=unread, sleep=sleep)
        poller.sync = ThreadSyncEngine(client, matrix_sender, cursor_store, message_map)

        with pytest.raises(asyncio.CancelledError):
            await poller.run_thread(thread_record)

        assert delays == [2.0, 4.0, 8.0, 16.0]
        assert THREAD_ID not in cursor_store.cursors
        assert not unread.should_send_read_receipt(ROOM_ID)

    @pytest.mark.asyncio
    async def test_auth_loss_stops_loop(self, auth_holder, thread_record):
        """A failed token check ends the loop with AuthRequiredError."""
        poller = _poller(auth_holder)
        poller.auth_client.ensure_skype_token.side_effect = AuthRequiredError("expired")
        with pytest.raises(AuthRequiredError):
            await poller.run_thread(thread_record)
        poller.sync.sync_thread.assert_not_awaited()


class TestRun:
    """Tests for discovery, task management and shutdown."""

    @pytest.mark.asyncio
    async def test_start_thread_once(self, auth_holder, thread_record):
        """A thread gets one task; unpollable threads get none."""
        poller = _poller(auth_holder, sleep=_blocking_sleep())
        poller.sync.sync_thread = AsyncMock(return_value=SyncResult())

        assert poller.start_thread(thread_record)
        assert not poller.start_thread(thread_record)
        assert not poller.start_thread(ThreadRecord("48:notes", ROOM_ID))

        await poller.stop()

    @pytest.mark.asyncio
    async def test_refresh_starts_known_threads(self, auth_holder, thread_record):
        """After discovery every pollable record gets a task, even if discovery failed."""
        threads = MagicMock()
        threads.refresh_threads = AsyncMock(side_effect=ConversationsError(500))
        threads.records = MagicMock(return_value=[thread_record])
        poller = _poller(auth_holder, threads=threads, sleep=_blocking_sleep())
        poller.sync.sync_thread = AsyncMock(return_value=SyncResult())

        assert await poller.refresh() == 1
        await poller.stop()

    @pytest.mark.asyncio
    async def test_run_stops_on_auth_loss(self, auth_holder, thread_record):
        """An auth failure inside a thread task ends run() and cancels the rest."""
        threads = MagicMock()
        threads.refresh_threads = AsyncMock(return_value=(1, []))
        threads.records = MagicMock(return_value=[thread_record])
        poller = _poller(auth_holder, threads=threads)
        poller.refresh_interval = 2.0
        poller.auth_client.ensure_skype_token.side_effect = ["skype-token", AuthRequiredError("expired")]

        with pytest.raises(AuthRequiredError):
            await asyncio.wait_for(poller.run(), timeout=5)
        assert poller._tasks == {}
