"""
Database — async SQLite connection shared by the history and session stores
===========================================================================
One persistent aiosqlite connection per database file, opened lazily inside
the running event loop with WAL journaling. Writes are serialised through an
asyncio.Lock so a statement and its commit are never interleaved with another
coroutine's.

Every aiosqlite/sqlite3 error is re-raised as StorageError. There is no
in-memory fallback: an operation that cannot persist must fail.

Schema:
  routing_patterns  — (project, signature_hash, model) outcome counters
  sessions          — one row per orchestrator run
  attempts          — append-only log of task attempts
  guardrails        — append-only lessons from failed attempts
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite

logger = logging.getLogger("prd_orchestrator.storage")


class StorageError(RuntimeError):
    """The persistence layer is unavailable or rejected an operation."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS routing_patterns (
    project        TEXT    NOT NULL,
    signature_hash TEXT    NOT NULL,
    model          TEXT    NOT NULL,
    success_count  INTEGER NOT NULL DEFAULT 0,
    fail_count     INTEGER NOT NULL DEFAULT 0,
    avg_cost       REAL    NOT NULL DEFAULT 0,
    last_updated   TEXT    NOT NULL,
    PRIMARY KEY (project, signature_hash, model)
);

CREATE TABLE IF NOT EXISTS sessions (
    id              TEXT    PRIMARY KEY,
    project         TEXT    NOT NULL,
    prd_path        TEXT,
    started_at      TEXT    NOT NULL,
    ended_at        TEXT,
    status          TEXT    NOT NULL,
    total_tasks     INTEGER NOT NULL DEFAULT 0,
    completed_tasks INTEGER NOT NULL DEFAULT 0,
    failed_tasks    INTEGER NOT NULL DEFAULT 0,
    skipped_tasks   INTEGER NOT NULL DEFAULT 0,
    current_task_id TEXT,
    total_tokens    INTEGER NOT NULL DEFAULT 0,
    total_cost_usd  REAL    NOT NULL DEFAULT 0,
    config          TEXT    NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS attempts (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id     TEXT    NOT NULL,
    project        TEXT    NOT NULL,
    task_id        TEXT    NOT NULL,
    attempt_number INTEGER NOT NULL,
    model          TEXT    NOT NULL,
    success        INTEGER NOT NULL,
    signature_hash TEXT    NOT NULL DEFAULT '',
    input_tokens   INTEGER NOT NULL DEFAULT 0,
    output_tokens  INTEGER NOT NULL DEFAULT 0,
    cost_usd       REAL    NOT NULL DEFAULT 0,
    escalated_from TEXT,
    error_category TEXT,
    error_message  TEXT,
    started_at     TEXT    NOT NULL,
    ended_at       TEXT    NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(id)
);

CREATE TABLE IF NOT EXISTS guardrails (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    project        TEXT    NOT NULL,
    category       TEXT    NOT NULL,
    severity       TEXT    NOT NULL,
    title          TEXT    NOT NULL,
    problem        TEXT    NOT NULL,
    solution       TEXT    NOT NULL,
    tags           TEXT    NOT NULL DEFAULT '[]',
    related_tasks  TEXT    NOT NULL DEFAULT '[]',
    signature_hash TEXT    NOT NULL DEFAULT '',
    created_at     TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_project
    ON sessions(project, status, started_at);

CREATE INDEX IF NOT EXISTS idx_attempts_session
    ON attempts(session_id, task_id, attempt_number);

CREATE INDEX IF NOT EXISTS idx_attempts_project
    ON attempts(project);

CREATE INDEX IF NOT EXISTS idx_guardrails_project
    ON guardrails(project, signature_hash);
"""


class Database:
    """
    Lazily-opened aiosqlite connection with one-time schema init.

    Parameters
    ----------
    db_path:
        SQLite file. Parent directories are created on first connect.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None  # created lazily inside the event loop

    @property
    def path(self) -> Path:
        return self._db_path

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def _get_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            async with self._get_lock():
                if self._conn is None:
                    conn: Optional[aiosqlite.Connection] = None
                    try:
                        self._db_path.parent.mkdir(parents=True, exist_ok=True)
                        conn = await aiosqlite.connect(str(self._db_path))
                        conn.row_factory = aiosqlite.Row
                        await conn.execute("PRAGMA journal_mode=WAL")
                        await conn.executescript(_SCHEMA)
                        await conn.commit()
                    except (OSError, sqlite3.Error) as exc:
                        if conn is not None:
                            await self._discard(conn)
                        raise StorageError(
                            f"Cannot open database '{self._db_path}': {exc}"
                        ) from exc
                    self._conn = conn
                    logger.debug("Opened database %s", self._db_path)
        return self._conn

    async def _discard(self, conn: aiosqlite.Connection) -> None:
        """Close a connection that failed setup; its own close error is only logged."""
        try:
            await conn.close()
        except sqlite3.Error as exc:
            logger.warning("Error closing half-opened database %s: %s", self._db_path, exc)

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run one write statement and commit. Returns lastrowid."""
        conn = await self._get_conn()
        async with self._get_lock():
            try:
                cursor = await conn.execute(sql, tuple(params))
                await conn.commit()
                return cursor.lastrowid or 0
            except sqlite3.Error as exc:
                raise StorageError(f"Write failed: {exc}") from exc

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        conn = await self._get_conn()
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as exc:
            raise StorageError(f"Read failed: {exc}") from exc

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        conn = await self._get_conn()
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Read failed: {exc}") from exc

    async def close(self) -> None:
        """Close the connection before the event loop shuts down."""
        if self._conn is not None:
            try:
                await self._conn.close()
                # let the aiosqlite worker thread finish its callbacks
                await asyncio.sleep(0)
            except sqlite3.Error as exc:
                logger.warning("Error closing database %s: %s", self._db_path, exc)
            finally:
                self._conn = None
