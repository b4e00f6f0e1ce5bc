"""Event model and observability snapshots for the outbox."""

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

__all__ = [
    "EVENT_COLUMNS",
    "Event",
    "EventTypeStats",
    "OutboxStats",
    "WorkerStats",
    "row_to_event",
]

# Column order used by every SELECT / RETURNING in the store.
EVENT_COLUMNS = (
    "id",
    "tenant_id",
    "item_type",
    "item_id",
    "event_name",
    "payload",
    "created_at",
    "claimed_at",
    "claimed_by",
    "processed_at",
    "retry_count",
    "max_attempts",
    "next_attempt_at",
    "dead_letter_at",
    "last_error",
    "correlation_id",
    "dedupe_key",
    "actor_user_id",
    "replayed_at",
    "replayed_by",
    "replay_count",
)


@dataclass(frozen=True)
class Event:
    """Immutable snapshot of an outbox row, passed to handlers."""

    id: int
    tenant_id: str
    item_type: str
    item_id: str
    event_name: str
    payload: dict[str, Any]
    created_at: float
    claimed_at: float | None = None
    claimed_by: str | None = None
    processed_at: float | None = None
    retry_count: int = 0
    max_attempts: int = 3
    next_attempt_at: float | None = None
    dead_letter_at: float | None = None
    last_error: str | None = None
    correlation_id: str | None = None
    dedupe_key: str | None = None
    actor_user_id: str | None = None
    replayed_at: float | None = None
    replayed_by: str | None = None
    replay_count: int = 0

    @property
    def is_dead_lettered(self) -> bool:
        return self.dead_letter_at is not None

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    def is_claimable(self, now: float) -> bool:
        """Same predicate the store uses in SQL."""
        return (
            self.processed_at is None
            and self.claimed_at is None
            and self.dead_letter_at is None
            and (self.next_attempt_at is None or self.next_attempt_at <= now)
        )


def row_to_event(row: tuple) -> Event:
    """Convert a row in EVENT_COLUMNS order to an Event."""
    d = dict(zip(EVENT_COLUMNS, row))
    raw = d["payload"]
    d["payload"] = json.loads(raw) if isinstance(raw, str) else (raw or {})
    d["retry_count"] = d["retry_count"] or 0
    d["replay_count"] = d["replay_count"] or 0
    return Event(**d)


class EventTypeStats(BaseModel):
    """Per event_name counters derived from the table."""

    event_name: str
    processed: int = 0
    dead_lettered: int = 0
    pending: int = 0
    failed_attempts: int = 0


class OutboxStats(BaseModel):
    """Health snapshot for monitoring. processing lag is the primary signal."""

    unclaimed: int = 0
    scheduled: int = 0
    claimed: int = 0
    processed: int = 0
    dead_lettered: int = 0
    oldest_unprocessed_age_seconds: float | None = None
    by_event_type: list[EventTypeStats] = Field(default_factory=list)


@dataclass
class WorkerStats:
    """In-process dispatch counters for one worker."""

    ticks: int = 0
    claimed: int = 0
    succeeded: dict[str, int] = field(default_factory=dict)
    failed: dict[str, int] = field(default_factory=dict)
    unhandled: dict[str, int] = field(default_factory=dict)
    dead_lettered: int = 0
    lost_claims: int = 0
    deferred: int = 0
    tick_errors: int = 0

    def bump(self, bucket: dict[str, int], event_name: str) -> None:
        bucket[event_name] = bucket.get(event_name, 0) + 1

    def failure_rate(self, event_name: str) -> float:
        """Failed attempts / all attempts for event_name (0.0 when unseen)."""
        ok = self.succeeded.get(event_name, 0)
        bad = self.failed.get(event_name, 0)
        total = ok + bad
        return bad / total if total else 0.0
