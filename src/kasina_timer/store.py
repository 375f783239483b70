"""Local fallback store backed by SQLite (aiosqlite).

Holds one row per session key with a ``synced`` flag, plus a single-row
checkpoint of the session currently running. Rows are inserted or updated,
never deleted, except the checkpoint which is cleared when a session ends.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from .models import ResolvedSession


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FallbackRecord:
    session_key: str
    kasina_type: str
    kasina_name: str
    duration_seconds: int
    started_at: str
    synced: bool
    attempts: int = 0
    last_error: str | None = None
    updated_at: str | None = None

    def to_session(self) -> ResolvedSession:
        return ResolvedSession(
            duration_seconds=self.duration_seconds,
            kasina_type=self.kasina_type,
            started_at=datetime.fromisoformat(self.started_at),
        )

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> FallbackRecord:
        return cls(
            session_key=row["session_key"],
            kasina_type=row["kasina_type"],
            kasina_name=row["kasina_name"],
            duration_seconds=row["duration_seconds"],
            started_at=row["started_at"],
            synced=bool(row["synced"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )


@dataclass
class Checkpoint:
    """Snapshot of a running session, for recovery after a crash."""

    session_key: str
    kasina_type: str
    started_at: str
    elapsed_seconds: int
    target_seconds: int | None
    minimum_recordable_seconds: int
    rounding_threshold_seconds: int
    updated_at: str


class FallbackStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout=5000")
            db.row_factory = aiosqlite.Row
            yield db

    # ── Schema ────────────────────────────────────────────────

    async def init(self) -> None:
        """Create tables if missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout=5000")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS session_fallback (
                    session_key TEXT PRIMARY KEY,
                    kasina_type TEXT NOT NULL,
                    kasina_name TEXT NOT NULL,
                    duration_seconds INTEGER NOT NULL,
                    started_at TEXT NOT NULL,
                    synced INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_session_fallback_synced
                ON session_fallback(synced, started_at)
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS active_checkpoint (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    session_key TEXT NOT NULL,
                    kasina_type TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    elapsed_seconds INTEGER NOT NULL,
                    target_seconds INTEGER,
                    minimum_recordable_seconds INTEGER NOT NULL,
                    rounding_threshold_seconds INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.commit()

    # ── Fallback records ──────────────────────────────────────

    async def put(self, session: ResolvedSession, kasina_name: str) -> None:
        """Record a session as unsynced. An existing row keeps its sync state."""
        now = _now_iso()
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO session_fallback (
                    session_key, kasina_type, kasina_name, duration_seconds,
                    started_at, synced, attempts, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 0, 0, ?, ?)
                ON CONFLICT(session_key) DO UPDATE SET
                    updated_at = excluded.updated_at
            """, (
                session.session_key, session.kasina_type, kasina_name,
                session.duration_seconds, session.started_at.isoformat(),
                now, now,
            ))
            await db.commit()

    async def get(self, session_key: str) -> FallbackRecord | None:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM session_fallback WHERE session_key = ?", (session_key,)
            )
            row = await cursor.fetchone()
        return FallbackRecord.from_row(row) if row else None

    async def mark_synced(self, session_key: str, attempts: int) -> None:
        async with self._connect() as db:
            await db.execute("""
                UPDATE session_fallback
                SET synced = 1, attempts = attempts + ?, last_error = NULL, updated_at = ?
                WHERE session_key = ?
            """, (attempts, _now_iso(), session_key))
            await db.commit()

    async def mark_failed(self, session_key: str, attempts: int, error: str) -> None:
        async with self._connect() as db:
            await db.execute("""
                UPDATE session_fallback
                SET synced = 0, attempts = attempts + ?, last_error = ?, updated_at = ?
                WHERE session_key = ?
            """, (attempts, error, _now_iso(), session_key))
            await db.commit()

    async def list_unsynced(self) -> list[FallbackRecord]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM session_fallback WHERE synced = 0 ORDER BY started_at"
            )
            rows = await cursor.fetchall()
        return [FallbackRecord.from_row(row) for row in rows]

    # ── Active-session checkpoint ─────────────────────────────

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        async with self._connect() as db:
            await db.execute("""
                INSERT INTO active_checkpoint (
                    id, session_key, kasina_type, started_at, elapsed_seconds,
                    target_seconds, minimum_recordable_seconds,
                    rounding_threshold_seconds, updated_at
                ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    session_key = excluded.session_key,
                    kasina_type = excluded.kasina_type,
                    started_at = excluded.started_at,
                    elapsed_seconds = excluded.elapsed_seconds,
                    target_seconds = excluded.target_seconds,
                    minimum_recordable_seconds = excluded.minimum_recordable_seconds,
                    rounding_threshold_seconds = excluded.rounding_threshold_seconds,
                    updated_at = excluded.updated_at
            """, (
                checkpoint.session_key, checkpoint.kasina_type, checkpoint.started_at,
                checkpoint.elapsed_seconds, checkpoint.target_seconds,
                checkpoint.minimum_recordable_seconds,
                checkpoint.rounding_threshold_seconds, checkpoint.updated_at,
            ))
            await db.commit()

    async def load_checkpoint(self) -> Checkpoint | None:
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM active_checkpoint WHERE id = 1")
            row = await cursor.fetchone()
        if not row:
            return None
        return Checkpoint(
            session_key=row["session_key"],
            kasina_type=row["kasina_type"],
            started_at=row["started_at"],
            elapsed_seconds=row["elapsed_seconds"],
            target_seconds=row["target_seconds"],
            minimum_recordable_seconds=row["minimum_recordable_seconds"],
            rounding_threshold_seconds=row["rounding_threshold_seconds"],
            updated_at=row["updated_at"],
        )

    async def clear_checkpoint(self, session_key: str | None = None) -> None:
        """Remove the checkpoint, only if it belongs to ``session_key`` when given."""
        async with self._connect() as db:
            if session_key is None:
                await db.execute("DELETE FROM active_checkpoint")
            else:
                await db.execute(
                    "DELETE FROM active_checkpoint WHERE session_key = ?", (session_key,)
                )
            await db.commit()
