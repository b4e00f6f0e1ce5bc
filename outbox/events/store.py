"""SQLite storage for the outbox: append, atomic claim, ack, retry release, dead letter, replay."""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from outbox.events.models import (
    EVENT_COLUMNS,
    Event,
    EventTypeStats,
    OutboxStats,
    row_to_event,
)

logger = logging.getLogger(__name__)

_COLUMNS_SQL = ", ".join(EVENT_COLUMNS)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox_event (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id       TEXT    NOT NULL,
    item_type       TEXT    NOT NULL,
    item_id         TEXT    NOT NULL,
    event_name      TEXT    NOT NULL,
    payload         TEXT    NOT NULL,
    created_at      REAL    NOT NULL,
    claimed_at      REAL,
    claimed_by      TEXT,
    processed_at    REAL,
    retry_count     INTEGER NOT NULL DEFAULT 0,
    max_attempts    INTEGER NOT NULL DEFAULT 3,
    next_attempt_at REAL,
    dead_letter_at  REAL,
    last_error      TEXT,
    correlation_id  TEXT,
    dedupe_key      TEXT,
    actor_user_id   TEXT,
    replayed_at     REAL,
    replayed_by     TEXT,
    replay_count    INTEGER NOT NULL DEFAULT 0,
    CHECK ((claimed_at IS NULL) = (claimed_by IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_oe_pending
    ON outbox_event(processed_at, dead_letter_at, claimed_at, created_at);
CREATE INDEX IF NOT EXISTS idx_oe_item ON outbox_event(tenant_id, item_type, item_id);
CREATE INDEX IF NOT EXISTS idx_oe_correlation ON outbox_event(correlation_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_oe_dedupe
    ON outbox_event(tenant_id, dedupe_key) WHERE dedupe_key IS NOT NULL;
"""

_CLAIMABLE = """
    processed_at IS NULL
    AND claimed_at IS NULL
    AND dead_letter_at IS NULL
"""

# Single conditional read-modify-write: the inner SELECT picks candidates, the
# outer WHERE re-checks them, and RETURNING hands back exactly the rows won.
_CLAIM_SQL = f"""
UPDATE outbox_event
SET claimed_at = ?, claimed_by = ?
WHERE id IN (
    SELECT id FROM outbox_event
    WHERE {_CLAIMABLE}
      AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
    ORDER BY created_at ASC, id ASC
    LIMIT ?
)
AND {_CLAIMABLE}
RETURNING {_COLUMNS_SQL}
"""


class EventNotFoundError(LookupError):
    """No outbox event with the given id."""


class ReplayError(Exception):
    """Replay requested for an event that is not dead-lettered."""


def _now(now: float | None) -> float:
    return time.time() if now is None else now


class EventStore:
    """SQLite-backed outbox table. One connection per instance.

    Several instances (or processes) may share one database file; claim
    atomicity comes from SQLite's write lock, not from anything in Python.
    """

    def __init__(
        self,
        db_path: Path,
        busy_timeout: int = 5000,
        default_max_attempts: int = 3,
    ) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._default_max_attempts = default_max_attempts
        self._conn: aiosqlite.Connection | None = None
        # One connection runs one transaction at a time
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug("outbox store: schema ensured at %s", self._db_path)
        return self._conn

    async def open(self) -> None:
        """Open the connection and ensure schema. Idempotent."""
        async with self._lock:
            await self._ensure_conn()

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock:
            if self._conn:
                await self._conn.close()
                self._conn = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction holding SQLite's RESERVED lock from the first statement."""
        async with self._lock:
            conn = await self._ensure_conn()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            yield await self._ensure_conn()

    # --- producer API ---

    async def append(
        self,
        tenant_id: str | int,
        item_type: str,
        item_id: str | int,
        event_name: str,
        payload: dict[str, Any] | None = None,
        *,
        correlation_id: str | None = None,
        dedupe_key: str | None = None,
        actor_user_id: str | int | None = None,
        max_attempts: int | None = None,
        now: float | None = None,
    ) -> int:
        """Insert an unclaimed event and return its id.

        With a dedupe_key, a second append for the same tenant returns the
        existing id and writes nothing.
        """
        event_name = (event_name or "").strip()
        if not event_name:
            raise ValueError("event_name must not be empty")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValueError(f"payload must be a dict, got {type(payload).__name__}")
        try:
            payload_json = json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise ValueError(f"payload must be JSON-serializable: {e}") from e
        attempts = self._default_max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        tenant = str(tenant_id)
        async with self._transaction() as conn:
            if dedupe_key is not None:
                cursor = await conn.execute(
                    "SELECT id FROM outbox_event WHERE tenant_id = ? AND dedupe_key = ?",
                    (tenant, dedupe_key),
                )
                row = await cursor.fetchone()
                if row:
                    logger.info(
                        "outbox store: duplicate append %s for tenant %s (dedupe_key=%s) -> event %s",
                        event_name,
                        tenant,
                        dedupe_key,
                        row[0],
                    )
                    return row[0]
            cursor = await conn.execute(
                """
                INSERT INTO outbox_event (
                    tenant_id, item_type, item_id, event_name, payload, created_at,
                    max_attempts, correlation_id, dedupe_key, actor_user_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant,
                    item_type,
                    str(item_id),
                    event_name,
                    payload_json,
                    _now(now),
                    attempts,
                    correlation_id,
                    dedupe_key,
                    None if actor_user_id is None else str(actor_user_id),
                ),
            )
            event_id = cursor.lastrowid or 0
        logger.debug("outbox store: appended event %s (%s)", event_id, event_name)
        return event_id

    # --- claim manager ---

    async def claim(
        self, limit: int, worker_id: str, now: float | None = None
    ) -> list[Event]:
        """Atomically reserve up to `limit` claimable events for worker_id, oldest first."""
        if limit <= 0:
            return []
        if not worker_id:
            raise ValueError("worker_id must not be empty")
        ts = _now(now)
        async with self._transaction() as conn:
            cursor = await conn.execute(_CLAIM_SQL, (ts, worker_id, ts, limit))
            rows = await cursor.fetchall()
        events = [row_to_event(row) for row in rows]
        events.sort(key=lambda e: (e.created_at, e.id))
        return events

    # --- ack / release, all conditional on the claim still being ours ---

    async def mark_processed(
        self, event_id: int, worker_id: str, now: float | None = None
    ) -> bool:
        """Success path. False when the claim is no longer held by worker_id."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE outbox_event
                SET processed_at = ?, claimed_at = NULL, claimed_by = NULL
                WHERE id = ? AND claimed_by = ? AND processed_at IS NULL
                """,
                (_now(now), event_id, worker_id),
            )
            return (cursor.rowcount or 0) > 0

    async def release_claim(self, event_id: int, worker_id: str) -> bool:
        """Give back a claim that was never attempted. retry_count is untouched."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE outbox_event
                SET claimed_at = NULL, claimed_by = NULL
                WHERE id = ? AND claimed_by = ?
                  AND processed_at IS NULL AND dead_letter_at IS NULL
                """,
                (event_id, worker_id),
            )
            return (cursor.rowcount or 0) > 0

    async def release_for_retry(
        self,
        event_id: int,
        worker_id: str,
        next_attempt_at: float,
        error: str,
    ) -> bool:
        """Count one failed attempt and return the event to the pool after next_attempt_at."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE outbox_event
                SET retry_count = retry_count + 1,
                    claimed_at = NULL,
                    claimed_by = NULL,
                    next_attempt_at = ?,
                    last_error = ?
                WHERE id = ? AND claimed_by = ?
                  AND processed_at IS NULL AND dead_letter_at IS NULL
                """,
                (next_attempt_at, error, event_id, worker_id),
            )
            return (cursor.rowcount or 0) > 0

    async def dead_letter(
        self,
        event_id: int,
        worker_id: str,
        error: str,
        now: float | None = None,
    ) -> bool:
        """Count one failed attempt and move the event to the dead-letter partition."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE outbox_event
                SET retry_count = retry_count + 1,
                    dead_letter_at = ?,
                    claimed_at = NULL,
                    claimed_by = NULL,
                    next_attempt_at = NULL,
                    last_error = ?
                WHERE id = ? AND claimed_by = ?
                  AND processed_at IS NULL AND dead_letter_at IS NULL
                """,
                (_now(now), error, event_id, worker_id),
            )
            return (cursor.rowcount or 0) > 0

    # --- reaper ---

    async def release_stale(
        self, lease_seconds: float, now: float | None = None
    ) -> list[int]:
        """Release claims older than the lease. retry_count is untouched. Returns released ids."""
        cutoff = _now(now) - lease_seconds
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE outbox_event
                SET claimed_at = NULL, claimed_by = NULL
                WHERE processed_at IS NULL
                  AND claimed_at IS NOT NULL
                  AND claimed_at < ?
                RETURNING id
                """,
                (cutoff,),
            )
            rows = await cursor.fetchall()
        return sorted(row[0] for row in rows)

    # --- dead letter sink ---

    async def list_dead_letters(
        self, tenant_id: str | int | None = None, limit: int = 100
    ) -> list[Event]:
        """Dead-lettered events, most recent first."""
        sql = f"SELECT {_COLUMNS_SQL} FROM outbox_event WHERE dead_letter_at IS NOT NULL"
        params: list[Any] = []
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            params.append(str(tenant_id))
        sql += " ORDER BY dead_letter_at DESC, id DESC LIMIT ?"
        params.append(limit)
        async with self._reading() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        return [row_to_event(row) for row in rows]

    async def replay(
        self, event_id: int, operator: str, now: float | None = None
    ) -> Event:
        """Operator action: return a dead-lettered event to the claimable pool."""
        if not operator:
            raise ValueError("operator must be given for an audited replay")
        ts = _now(now)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT dead_letter_at, retry_count, last_error FROM outbox_event WHERE id = ?",
                (event_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise EventNotFoundError(f"outbox event {event_id} not found")
            if row[0] is None:
                raise ReplayError(f"outbox event {event_id} is not dead-lettered")
            cursor = await conn.execute(
                f"""
                UPDATE outbox_event
                SET dead_letter_at = NULL,
                    processed_at = NULL,
                    next_attempt_at = NULL,
                    retry_count = 0,
                    replayed_at = ?,
                    replayed_by = ?,
                    replay_count = replay_count + 1
                WHERE id = ?
                RETURNING {_COLUMNS_SQL}
                """,
                (ts, operator, event_id),
            )
            updated = await cursor.fetchone()
        logger.info(
            "outbox replay: event %s replayed by %s (had %d failed attempts, last error: %s)",
            event_id,
            operator,
            row[1],
            row[2],
        )
        return row_to_event(updated)

    # --- reads / observability ---

    async def get(self, event_id: int) -> Event | None:
        async with self._reading() as conn:
            cursor = await conn.execute(
                f"SELECT {_COLUMNS_SQL} FROM outbox_event WHERE id = ?", (event_id,)
            )
            row = await cursor.fetchone()
        return row_to_event(row) if row else None

    async def stats(self, now: float | None = None) -> OutboxStats:
        """Counts by processing state, per-type counters and processing lag."""
        ts = _now(now)
        async with self._reading() as conn:
            cursor = await conn.execute(
                f"""
                SELECT
                    SUM(CASE WHEN {_CLAIMABLE}
                              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                        THEN 1 ELSE 0 END),
                    SUM(CASE WHEN {_CLAIMABLE} AND next_attempt_at > ? THEN 1 ELSE 0 END),
                    SUM(CASE WHEN claimed_at IS NOT NULL THEN 1 ELSE 0 END),
                    SUM(CASE WHEN processed_at IS NOT NULL THEN 1 ELSE 0 END),
                    SUM(CASE WHEN dead_letter_at IS NOT NULL THEN 1 ELSE 0 END),
                    MIN(CASE WHEN processed_at IS NULL AND dead_letter_at IS NULL
                        THEN created_at END)
                FROM outbox_event
                """,
                (ts, ts),
            )
            totals = await cursor.fetchone()
            cursor = await conn.execute(
                """
                SELECT
                    event_name,
                    SUM(CASE WHEN processed_at IS NOT NULL THEN 1 ELSE 0 END),
                    SUM(CASE WHEN dead_letter_at IS NOT NULL THEN 1 ELSE 0 END),
                    SUM(CASE WHEN processed_at IS NULL AND dead_letter_at IS NULL
                        THEN 1 ELSE 0 END),
                    SUM(retry_count)
                FROM outbox_event
                GROUP BY event_name
                ORDER BY event_name
                """
            )
            per_type = await cursor.fetchall()

        unclaimed, scheduled, claimed, processed, dead, oldest = totals or (None,) * 6
        return OutboxStats(
            unclaimed=unclaimed or 0,
            scheduled=scheduled or 0,
            claimed=claimed or 0,
            processed=processed or 0,
            dead_lettered=dead or 0,
            oldest_unprocessed_age_seconds=(
                max(0.0, ts - oldest) if oldest is not None else None
            ),
            by_event_type=[
                EventTypeStats(
                    event_name=name,
                    processed=p or 0,
                    dead_lettered=d or 0,
                    pending=pend or 0,
                    failed_attempts=f or 0,
                )
                for name, p, d, pend, f in per_type
            ],
        )
