"""Outbox engine: durable event table, atomic claims, retry/dead letter, stale claim reaper."""

from outbox.events.dispatcher import (
    DispatchOutcome,
    DispatchResult,
    Dispatcher,
    HandlerRegistry,
    PermanentHandlerError,
    RetryableHandlerError,
)
from outbox.events.kinds import EventKind
from outbox.events.models import Event, OutboxStats, WorkerStats
from outbox.events.reaper import StaleClaimReaper
from outbox.events.retry import RetryScheduler, compute_backoff_minutes
from outbox.events.store import EventNotFoundError, EventStore, ReplayError
from outbox.events.worker import OutboxWorker, make_worker_id

__all__ = [
    "DispatchOutcome",
    "DispatchResult",
    "Dispatcher",
    "Event",
    "EventKind",
    "EventNotFoundError",
    "EventStore",
    "HandlerRegistry",
    "OutboxStats",
    "OutboxWorker",
    "PermanentHandlerError",
    "ReplayError",
    "RetryScheduler",
    "RetryableHandlerError",
    "StaleClaimReaper",
    "WorkerStats",
    "compute_backoff_minutes",
    "make_worker_id",
]
