"""Outbox worker: tick loop that claims a batch, dispatches each event, acks or schedules a retry."""

import asyncio
import logging
import os
import socket
import time
import uuid
from typing import Callable

from outbox.events.dispatcher import DispatchOutcome, Dispatcher
from outbox.events.models import Event, WorkerStats
from outbox.events.retry import DEFAULT_BACKOFF_CAP_MINUTES, RetryScheduler
from outbox.events.store import EventStore

logger = logging.getLogger(__name__)


def make_worker_id() -> str:
    """Unique identity for one worker instance: host-pid-random."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class OutboxWorker:
    """Claims batches on a fixed tick. Identity is fixed at construction."""

    def __init__(
        self,
        store: EventStore,
        dispatcher: Dispatcher,
        worker_id: str,
        batch_size: int = 10,
        tick_interval: float = 30.0,
        backoff_cap_minutes: int = DEFAULT_BACKOFF_CAP_MINUTES,
        backoff_jitter: bool = False,
        concurrent_dispatch: bool = False,
        lease_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not worker_id:
            raise ValueError("worker_id must not be empty")
        self._store = store
        self._dispatcher = dispatcher
        self._worker_id = worker_id
        self._batch_size = batch_size
        self._tick_interval = tick_interval
        self._concurrent = concurrent_dispatch
        self._lease_seconds = lease_seconds
        self._clock = clock
        self._retry = RetryScheduler(
            store, backoff_cap_minutes=backoff_cap_minutes, jitter=backoff_jitter, clock=clock
        )
        self._stats = WorkerStats()
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def stats(self) -> WorkerStats:
        return self._stats

    async def start(self) -> None:
        """Start the tick loop as an asyncio Task."""
        self._stopped = False
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "outbox worker %s started (batch_size=%d, tick=%.1fs)",
            self._worker_id,
            self._batch_size,
            self._tick_interval,
        )

    async def stop(self) -> None:
        """Stop after the batch in flight finishes."""
        self._stopped = True
        self._wake.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("outbox worker %s stopped", self._worker_id)

    def wake(self) -> None:
        """Run the next tick now instead of waiting out the interval."""
        self._wake.set()

    async def _loop(self) -> None:
        while not self._stopped:
            try:
                await self.run_once()
            except Exception as e:
                # Storage failure: drop this tick, the next one starts from scratch
                self._stats.tick_errors += 1
                logger.exception("outbox worker %s: tick failed: %s", self._worker_id, e)
            if self._stopped:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._tick_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def run_once(self) -> int:
        """One tick: claim, dispatch, ack/retry. Returns number of events claimed."""
        self._stats.ticks += 1
        claimed_at = self._clock()
        events = await self._store.claim(self._batch_size, self._worker_id, now=claimed_at)
        if not events:
            return 0
        self._stats.claimed += len(events)
        logger.info(
            "outbox worker %s: claimed %d events (%s)",
            self._worker_id,
            len(events),
            ", ".join(str(e.id) for e in events),
        )
        if self._concurrent:
            results = await asyncio.gather(
                *(self._process(e) for e in events), return_exceptions=True
            )
            for r in results:
                if isinstance(r, BaseException):
                    raise r
            return len(events)

        deadline = self._start_deadline(claimed_at)
        for i, event in enumerate(events):
            if deadline is not None and self._clock() >= deadline:
                await self._release_unstarted(events[i:])
                break
            await self._process(event)
        return len(events)

    def _start_deadline(self, claimed_at: float) -> float | None:
        """Latest time a batch member may start and still be acked inside the lease."""
        if self._lease_seconds is None:
            return None
        return claimed_at + self._lease_seconds - self._dispatcher.handler_timeout

    async def _release_unstarted(self, events: list[Event]) -> None:
        released = 0
        for event in events:
            if await self._store.release_claim(event.id, self._worker_id):
                released += 1
        self._stats.deferred += released
        self._wake.set()
        logger.info(
            "outbox worker %s: lease deadline reached, released %d unstarted events (%s)",
            self._worker_id,
            released,
            ", ".join(str(e.id) for e in events),
        )

    async def _process(self, event: Event) -> None:
        result = await self._dispatcher.dispatch(event)

        if result.acknowledged:
            acked = await self._store.mark_processed(event.id, self._worker_id, now=self._clock())
            if not acked:
                self._stats.lost_claims += 1
                logger.warning(
                    "outbox worker %s: lost claim on event %s before ack; it will be redelivered",
                    self._worker_id,
                    event.id,
                )
                return
            if result.outcome == DispatchOutcome.UNHANDLED:
                self._stats.bump(self._stats.unhandled, event.event_name)
            else:
                self._stats.bump(self._stats.succeeded, event.event_name)
                logger.info(
                    "outbox worker %s: processed event %s: %s",
                    self._worker_id,
                    event.id,
                    event.event_name,
                )
            return

        self._stats.bump(self._stats.failed, event.event_name)
        plan = await self._retry.on_failure(
            event,
            self._worker_id,
            result.error or "handler failed",
            permanent=result.outcome == DispatchOutcome.PERMANENT,
        )
        if plan is None:
            self._stats.lost_claims += 1
        elif plan.dead_letter:
            self._stats.dead_lettered += 1
