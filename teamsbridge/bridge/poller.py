"""
Per-thread polling loop.

Each bridged thread gets its own asyncio task that syncs messages (with
their reactions), ingests read horizons, then sleeps for the delay chosen by
its PollBackoff. A periodic discovery refresh registers new threads and
starts tasks for them. An AuthRequiredError from the skypetoken check stops
every task, since no request can succeed until the user logs in again.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from teamsbridge.auth.client import AuthClient
from teamsbridge.auth.state import AuthStateHolder
from teamsbridge.bridge.backoff import PollBackoff, apply_poll_backoff
from teamsbridge.bridge.horizons import ConsumptionHorizonIngestor
from teamsbridge.bridge.sync import SyncResult, ThreadSyncEngine
from teamsbridge.bridge.threads import ThreadIndex
from teamsbridge.bridge.unread import UnreadCycleTracker
from teamsbridge.config import PollBackoffConfig, get_poll_backoff_config
from teamsbridge.exceptions import AuthRequiredError, RetryableError, TeamsAPIError
from teamsbridge.logging_config import LogContext, get_logger
from teamsbridge.protocols import ThreadRecord
from teamsbridge.teams.client import ConsumerAPIClient

logger = get_logger(__name__)

DEFAULT_REFRESH_INTERVAL = 300.0


def is_pollable(record: ThreadRecord) -> bool:
    return bool(record.room_id) and record.thread_id.endswith("@thread.v2")


class ThreadPoller:
    """Runs the sync loop for every bridged thread.

    Args:
        auth_client: Re-acquires the skypetoken when it expires.
        auth: Shared auth state.
        client: Consumer API client, used for discovery refreshes.
        threads: Thread index; new registrations get their own task.
        sync: Message sync engine.
        horizons: Optional read-horizon ingestor run after each sync.
        unread: Optional tracker; rooms receiving messages start an unread cycle.
        config: Poll backoff bounds (environment overrides applied when omitted).
        refresh_interval: Seconds between discovery refreshes.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        auth_client: AuthClient,
        auth: AuthStateHolder,
        client: ConsumerAPIClient,
        threads: ThreadIndex,
        sync: ThreadSyncEngine,
        horizons: Optional[ConsumptionHorizonIngestor] = None,
        unread: Optional[UnreadCycleTracker] = None,
        config: Optional[PollBackoffConfig] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.auth_client = auth_client
        self.auth = auth
        self.client = client
        self.threads = threads
        self.sync = sync
        self.horizons = horizons
        self.unread = unread
        self.config = config or get_poll_backoff_config()
        self.refresh_interval = refresh_interval
        self._sleep = sleep or asyncio.sleep
        self._tasks: dict[str, asyncio.Task] = {}

    async def poll_once(self, thread: ThreadRecord) -> tuple[SyncResult, Optional[Exception]]:
        """One sync + horizon pass. Returns the sync result and the sync error, if any."""
        error: Optional[Exception] = None
        try:
            result = await self.sync.sync_thread(thread)
        except AuthRequiredError:
            raise
        except Exception as e:
            result, error = SyncResult(), e
        if error is None and result.send_error is not None:
            # a stalled send is redelivered from the old cursor next pass
            error = result.send_error
        if result.advanced and self.unread is not None:
            self.unread.mark_unread(thread.room_id)

        if self.horizons is not None:
            try:
                await self.horizons.poll_once(thread.thread_id, thread.room_id)
            except AuthRequiredError:
                raise
            except Exception as e:
                logger.warning(
                    "teams consumption horizons ingest failed",
                    error=str(e),
                    thread_id=thread.thread_id,
                    room_id=thread.room_id,
                )
        return result, error

    async def run_thread(self, thread: ThreadRecord) -> None:
        """Poll one thread until cancelled or authentication is lost."""
        backoff = PollBackoff(config=self.config)
        with LogContext(thread_id=thread.thread_id, room_id=thread.room_id):
            logger.info("teams thread polling started")
            while True:
                await self.auth_client.ensure_skype_token(self.auth)
                result, error = await self.poll_once(thread)
                delay, reason = apply_poll_backoff(backoff, result.messages_ingested, error)
                fields = {
                    "reason": reason.value,
                    "delay": delay,
                    "messages_ingested": result.messages_ingested,
                    "advanced": result.advanced,
                }
                if error is not None:
                    if isinstance(error, (RetryableError, TeamsAPIError)):
                        fields["status"] = error.status
                    if isinstance(error, RetryableError) and error.retry_after:
                        fields["retry_after"] = error.retry_after
                    logger.warning("teams poll backoff updated", error=str(error), **fields)
                else:
                    logger.info("teams poll backoff updated", **fields)
                await self._sleep(delay)

    def start_thread(self, thread: ThreadRecord) -> bool:
        """Start a polling task for `thread` unless it has one or cannot be polled."""
        if not is_pollable(thread):
            logger.debug("skipping thread polling", thread_id=thread.thread_id, room_id=thread.room_id)
            return False
        task = self._tasks.get(thread.thread_id)
        if task is not None and not task.done():
            return False
        self._tasks[thread.thread_id] = asyncio.create_task(
            self.run_thread(thread), name=f"teams-poll-{thread.thread_id}"
        )
        return True

    async def refresh(self) -> int:
        """Discover threads and start tasks for every pollable one. Returns tasks started."""
        logger.info("teams thread discovery refresh start")
        try:
            discovered, registrations = await self.threads.refresh_threads(self.client)
        except AuthRequiredError:
            raise
        except Exception as e:
            logger.warning("teams thread discovery refresh failed", error=str(e))
        else:
            for registration in registrations:
                logger.info(
                    "teams thread registered",
                    thread_id=registration.thread.id,
                    room_id=registration.room_id,
                )
            logger.info("teams thread discovery refresh complete", discovered=discovered, new=len(registrations))
        started = sum(1 for record in self.threads.records() if self.start_thread(record))
        return started

    async def run(self) -> None:
        """Refresh, poll and re-refresh until cancelled.

        Raises:
            AuthRequiredError: A thread task lost authentication; all tasks are stopped.
        """
        await self.auth_client.ensure_skype_token(self.auth)
        try:
            while True:
                # tasks that ended between waits are checked before refresh restarts them
                self._raise_task_errors({task for task in self._tasks.values() if task.done()})
                await self.refresh()
                logger.info("teams polling loop running", threads=len(self._tasks))
                pending = [task for task in self._tasks.values() if not task.done()]
                if pending:
                    done, _ = await asyncio.wait(
                        pending, timeout=self.refresh_interval, return_when=asyncio.FIRST_EXCEPTION
                    )
                    self._raise_task_errors(done)
                else:
                    await self._sleep(self.refresh_interval)
        finally:
            await self.stop()

    def _raise_task_errors(self, done: set[asyncio.Task]) -> None:
        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if isinstance(error, AuthRequiredError):
                logger.error("teams polling stopped: authentication required", error=str(error))
                raise error
            if error is not None:
                logger.error("teams thread polling crashed", error=str(error), task=task.get_name())

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
