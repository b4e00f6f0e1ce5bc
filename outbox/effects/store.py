"""SQLite tables for downstream artifacts and the effect ledger used for idempotency."""

import asyncio
import logging
import time
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_MS = 5000

_SCHEMA = """
CREATE TABLE IF NOT EXISTS proposal (
    proposal_id  INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id    TEXT    NOT NULL,
    pursuit_id   TEXT    NOT NULL,
    version      INTEGER NOT NULL,
    status       TEXT    NOT NULL DEFAULT 'draft',
    source_event INTEGER,
    created_at   REAL    NOT NULL,
    UNIQUE (tenant_id, pursuit_id, version)
);

CREATE TABLE IF NOT EXISTS effect_ledger (
    effect_key   TEXT    PRIMARY KEY,
    event_id     INTEGER NOT NULL,
    created_at   REAL    NOT NULL
);
"""


class EffectsDb:
    """SQLite connection for handler side effects. One connection per instance."""

    def __init__(self, db_path: Path, busy_timeout: int = _BUSY_TIMEOUT_MS) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def ensure_conn(self) -> aiosqlite.Connection:
        """Open connection and ensure schema. Idempotent."""
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug("outbox effects: schema ensured at %s", self._db_path)
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def ensure_proposal_v1(
        self, tenant_id: str, pursuit_id: str, event_id: int
    ) -> bool:
        """Create draft proposal version 1 for the pursuit unless it exists. True if created."""
        async with self._lock:
            conn = await self.ensure_conn()
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO proposal
                    (tenant_id, pursuit_id, version, status, source_event, created_at)
                VALUES (?, ?, 1, 'draft', ?, ?)
                """,
                (tenant_id, pursuit_id, event_id, time.time()),
            )
            await conn.commit()
            return (cursor.rowcount or 0) > 0

    async def count_proposals(self, tenant_id: str, pursuit_id: str) -> int:
        async with self._lock:
            conn = await self.ensure_conn()
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM proposal WHERE tenant_id = ? AND pursuit_id = ?",
                (tenant_id, pursuit_id),
            )
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def effect_done(self, effect_key: str) -> bool:
        async with self._lock:
            conn = await self.ensure_conn()
            cursor = await conn.execute(
                "SELECT 1 FROM effect_ledger WHERE effect_key = ?", (effect_key,)
            )
            return (await cursor.fetchone()) is not None

    async def record_effect(self, effect_key: str, event_id: int) -> bool:
        """Remember a completed effect. False if it was already recorded."""
        async with self._lock:
            conn = await self.ensure_conn()
            cursor = await conn.execute(
                "INSERT OR IGNORE INTO effect_ledger (effect_key, event_id, created_at) VALUES (?, ?, ?)",
                (effect_key, event_id, time.time()),
            )
            await conn.commit()
            return (cursor.rowcount or 0) > 0
