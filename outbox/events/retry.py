"""Retry scheduling: exponential backoff with a ceiling, escape to dead letter."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable

from outbox.events.models import Event
from outbox.events.store import EventStore

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_CAP_MINUTES = 60


def compute_backoff_minutes(retry_count: int, cap_minutes: int = DEFAULT_BACKOFF_CAP_MINUTES) -> int:
    """Delay after failure number `retry_count`: min(2**retry_count, cap)."""
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")
    # Exponent clamp keeps the int small for events with huge max_attempts
    return min(2 ** min(retry_count, 32), cap_minutes)


def compute_retry_delay(
    retry_count: int,
    cap_minutes: int = DEFAULT_BACKOFF_CAP_MINUTES,
    jitter: bool = False,
) -> float:
    """Backoff in seconds, optionally with up to 30% jitter on top."""
    delay = compute_backoff_minutes(retry_count, cap_minutes) * 60.0
    if jitter:
        delay += random.uniform(0, delay * 0.3)
    return delay


@dataclass(frozen=True)
class RetryPlan:
    """What to do with a failed claim."""

    retry_count: int
    dead_letter: bool
    next_attempt_at: float | None = None


def plan_retry(
    event: Event,
    now: float,
    cap_minutes: int = DEFAULT_BACKOFF_CAP_MINUTES,
    jitter: bool = False,
    permanent: bool = False,
) -> RetryPlan:
    """Decide between delayed release and dead letter for one failed attempt."""
    retry_count = event.retry_count + 1
    if permanent or retry_count >= event.max_attempts:
        return RetryPlan(retry_count=retry_count, dead_letter=True)
    return RetryPlan(
        retry_count=retry_count,
        dead_letter=False,
        next_attempt_at=now + compute_retry_delay(retry_count, cap_minutes, jitter),
    )


class RetryScheduler:
    """Applies a RetryPlan to the store for a claim held by worker_id."""

    def __init__(
        self,
        store: EventStore,
        backoff_cap_minutes: int = DEFAULT_BACKOFF_CAP_MINUTES,
        jitter: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cap = backoff_cap_minutes
        self._jitter = jitter
        self._clock = clock

    async def on_failure(
        self,
        event: Event,
        worker_id: str,
        error: str,
        permanent: bool = False,
    ) -> RetryPlan | None:
        """Record the failure. Returns the applied plan, or None if the claim was lost."""
        now = self._clock()
        plan = plan_retry(event, now, self._cap, self._jitter, permanent)
        if plan.dead_letter:
            applied = await self._store.dead_letter(event.id, worker_id, error, now=now)
            if applied:
                logger.error(
                    "outbox retry: dead-lettered event %s (%s) after %d/%d attempts%s: %s",
                    event.id,
                    event.event_name,
                    plan.retry_count,
                    event.max_attempts,
                    " (permanent failure)" if permanent else "",
                    error,
                )
        else:
            assert plan.next_attempt_at is not None
            applied = await self._store.release_for_retry(
                event.id, worker_id, plan.next_attempt_at, error
            )
            if applied:
                logger.warning(
                    "outbox retry: event %s (%s) released for retry %d/%d in %.0fs: %s",
                    event.id,
                    event.event_name,
                    plan.retry_count,
                    event.max_attempts,
                    plan.next_attempt_at - now,
                    error,
                )
        if not applied:
            logger.warning(
                "outbox retry: claim on event %s no longer held by %s; failure not recorded",
                event.id,
                worker_id,
            )
            return None
        return plan
