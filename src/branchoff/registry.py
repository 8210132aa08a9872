"""Ecosystem Registry — SQLite-backed record of live branch deployments.

Maps context id → ``DeploymentContext`` for every persisted (non-test)
deployment. Read once at startup by the restore pipeline, written by the
provision and teardown steps. Also stores seen webhook delivery IDs for
deduplication.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import aiosqlite

from branchoff.models import DeploymentContext, DeploymentMode

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS deployments (
    id TEXT PRIMARY KEY,
    uri TEXT NOT NULL,
    branch TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'normal',
    scale INTEGER,
    dir TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS seen_events (
    delivery_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    received_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_deployments_mode ON deployments(mode);
"""


class EcosystemRegistry:
    """SQLite-backed ecosystem registry with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Ecosystem registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized — call initialize() first")
        return self._db

    # ── Deployments ──────────────────────────────────────────────────────

    async def list_all(self) -> dict[str, DeploymentContext]:
        """Snapshot of every known deployment, keyed by context id."""
        cursor = await self.db.execute("SELECT * FROM deployments ORDER BY created_at, id")
        rows = await cursor.fetchall()
        return {row["id"]: self._row_to_context(row) for row in rows}

    async def get(self, context_id: str) -> DeploymentContext | None:
        cursor = await self.db.execute("SELECT * FROM deployments WHERE id = ?", (context_id,))
        row = await cursor.fetchone()
        return self._row_to_context(row) if row else None

    async def save(self, ctx: DeploymentContext) -> None:
        """Insert or update a deployment.

        Test contexts are transient and are refused.
        """
        if ctx.is_test:
            raise ValueError(f"Refusing to persist test context {ctx.id}")

        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO deployments (id, uri, branch, mode, scale, dir, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   uri=excluded.uri, branch=excluded.branch, mode=excluded.mode,
                   scale=excluded.scale, dir=excluded.dir, updated_at=excluded.updated_at""",
            (ctx.id, ctx.uri, ctx.branch, ctx.mode.value, ctx.scale, ctx.dir, now, now),
        )
        await self.db.commit()
        logger.info(
            "Saved deployment: %s (%s@%s, mode=%s)", ctx.id, ctx.uri, ctx.branch, ctx.mode.value
        )

    async def remove(self, context_id: str) -> bool:
        """Delete a deployment. Returns False if it was not registered."""
        cursor = await self.db.execute("DELETE FROM deployments WHERE id = ?", (context_id,))
        await self.db.commit()
        removed = cursor.rowcount > 0
        if removed:
            logger.info("Removed deployment: %s", context_id)
        return removed

    # ── Webhook Deduplication ────────────────────────────────────────────

    async def has_seen_event(self, delivery_id: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM seen_events WHERE delivery_id = ?", (delivery_id,)
        )
        return await cursor.fetchone() is not None

    async def mark_event_seen(self, delivery_id: str, event_type: str) -> None:
        await self.db.execute(
            "INSERT OR IGNORE INTO seen_events (delivery_id, event_type, received_at) "
            "VALUES (?, ?, ?)",
            (delivery_id, event_type, datetime.now(timezone.utc).isoformat()),
        )
        await self.db.commit()

    async def prune_old_events(self, max_age_hours: int = 72) -> int:
        """Delete seen_events older than max_age_hours. Returns rows deleted."""
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=max_age_hours)).isoformat()
        cursor = await self.db.execute("DELETE FROM seen_events WHERE received_at < ?", (cutoff,))
        await self.db.commit()
        return cursor.rowcount

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_context(row: aiosqlite.Row) -> DeploymentContext:
        return DeploymentContext(
            id=row["id"],
            uri=row["uri"],
            branch=row["branch"],
            mode=DeploymentMode(row["mode"]),
            scale=row["scale"],
            dir=row["dir"],
        )
