"""Stale claim reaper: releases claims whose lease expired (crashed or hung worker)."""

import asyncio
import logging
import time
from typing import Callable

from outbox.events.store import EventStore

logger = logging.getLogger(__name__)


class StaleClaimReaper:
    """Periodically frees abandoned claims. Never counts as a failed attempt."""

    def __init__(
        self,
        store: EventStore,
        lease_seconds: float = 300.0,
        interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._lease_seconds = lease_seconds
        self._interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self.released_total = 0

    async def start(self) -> None:
        self._stopped = False
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "outbox reaper started (lease=%gs, interval=%gs)",
            self._lease_seconds,
            self._interval,
        )

    async def stop(self) -> None:
        self._stopped = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while not self._stopped:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            if self._stopped:
                break
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("outbox reaper failed: %s", e)

    async def run_once(self) -> list[int]:
        """One sweep. Returns ids whose claim was released."""
        released = await self._store.release_stale(self._lease_seconds, now=self._clock())
        if released:
            self.released_total += len(released)
            logger.warning(
                "outbox reaper: released %d stale claims older than %gs: %s",
                len(released),
                self._lease_seconds,
                ", ".join(str(i) for i in released),
            )
        return released
