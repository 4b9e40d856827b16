"""
Session Store — sessions, attempts and guardrails for one project
=================================================================
The in-process orchestrator and a detached background run both write
through this class, so status queries read the same rows whichever path
started the session.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from .models import (
    Attempt, ErrorCategory, Guardrail, GuardrailCategory, Session,
    SessionStatus, Severity,
)
from .storage import Database, utc_now

logger = logging.getLogger("prd_orchestrator.sessions")

_SESSION_COLUMNS = (
    "id, project, prd_path, started_at, ended_at, status, total_tasks, "
    "completed_tasks, failed_tasks, skipped_tasks, current_task_id, "
    "total_tokens, total_cost_usd, config"
)


@dataclass
class SessionStats:
    total_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    avg_tasks_per_session: float = 0.0


def new_session_id() -> str:
    return str(uuid.uuid4())


def _session_from_row(r: aiosqlite.Row) -> Session:
    return Session(
        id=r["id"],
        project=r["project"],
        prd_path=r["prd_path"],
        started_at=r["started_at"],
        ended_at=r["ended_at"],
        status=SessionStatus(r["status"]),
        total_tasks=r["total_tasks"],
        completed_tasks=r["completed_tasks"],
        failed_tasks=r["failed_tasks"],
        skipped_tasks=r["skipped_tasks"],
        current_task_id=r["current_task_id"],
        total_tokens=r["total_tokens"],
        total_cost_usd=r["total_cost_usd"],
        config=json.loads(r["config"] or "{}"),
    )


def _attempt_from_row(r: aiosqlite.Row) -> Attempt:
    return Attempt(
        id=r["id"],
        session_id=r["session_id"],
        task_id=r["task_id"],
        attempt_number=r["attempt_number"],
        model=r["model"],
        success=bool(r["success"]),
        signature_hash=r["signature_hash"],
        input_tokens=r["input_tokens"],
        output_tokens=r["output_tokens"],
        cost_usd=r["cost_usd"],
        escalated_from=r["escalated_from"],
        error_category=ErrorCategory(r["error_category"]) if r["error_category"] else None,
        error_message=r["error_message"],
        started_at=r["started_at"],
        ended_at=r["ended_at"],
    )


def _guardrail_from_row(r: aiosqlite.Row) -> Guardrail:
    return Guardrail(
        id=r["id"],
        project=r["project"],
        category=GuardrailCategory(r["category"]),
        severity=Severity(r["severity"]),
        title=r["title"],
        problem=r["problem"],
        solution=r["solution"],
        tags=json.loads(r["tags"] or "[]"),
        related_tasks=json.loads(r["related_tasks"] or "[]"),
        signature_hash=r["signature_hash"],
        created_at=r["created_at"],
    )


class SessionStore:

    def __init__(self, db: Database, project: str) -> None:
        self._db = db
        self.project = project

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def create_session(self, total_tasks: int, prd_path: Optional[str] = None,
                             config: Optional[dict] = None,
                             session_id: Optional[str] = None) -> Session:
        session = Session(
            id=session_id or new_session_id(),
            project=self.project,
            prd_path=prd_path,
            started_at=utc_now(),
            status=SessionStatus.RUNNING,
            total_tasks=total_tasks,
            config=config or {},
        )
        await self._db.execute(
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (session.id, session.project, session.prd_path, session.started_at,
             None, session.status.value, session.total_tasks, 0, 0, 0, None,
             0, 0.0, json.dumps(session.config)),
        )
        logger.info("Session %s created for %s (%d tasks)", session.id, self.project, total_tasks)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = await self._db.fetchone(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        )
        return _session_from_row(row) if row else None

    async def get_active_session(self) -> Optional[Session]:
        row = await self._db.fetchone(
            f"""SELECT {_SESSION_COLUMNS} FROM sessions
                WHERE project = ? AND status IN ('running', 'paused')
                ORDER BY started_at DESC LIMIT 1""",
            (self.project,),
        )
        return _session_from_row(row) if row else None

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        rows = await self._db.fetchall(
            f"""SELECT {_SESSION_COLUMNS} FROM sessions WHERE project = ?
                ORDER BY started_at DESC LIMIT ?""",
            (self.project, limit),
        )
        return [_session_from_row(r) for r in rows]

    async def save_session(self, session: Session) -> None:
        """
        Persist counters, cost, status and current task of a session.

        A stored 'cancelled' status is kept, so a cancel written by another
        process survives the running loop's next save.
        """
        await self._db.execute(
            """UPDATE sessions SET
                   status = CASE WHEN status = 'cancelled' THEN status ELSE ? END,
                   ended_at = CASE WHEN status = 'cancelled' THEN ended_at ELSE ? END,
                   total_tasks = ?, completed_tasks = ?,
                   failed_tasks = ?, skipped_tasks = ?, current_task_id = ?,
                   total_tokens = ?, total_cost_usd = ?
               WHERE id = ?""",
            (session.status.value, session.ended_at, session.total_tasks,
             session.completed_tasks, session.failed_tasks, session.skipped_tasks,
             session.current_task_id, session.total_tokens, session.total_cost_usd,
             session.id),
        )

    async def update_status(self, session_id: str, status: SessionStatus) -> None:
        ended_at = utc_now() if status.is_terminal else None
        await self._db.execute(
            "UPDATE sessions SET status = ?, ended_at = ? WHERE id = ?",
            (status.value, ended_at, session_id),
        )
        logger.info("Session %s → %s", session_id, status.value)

    async def stats(self) -> SessionStats:
        row = await self._db.fetchone(
            """SELECT COUNT(*) AS total,
                      SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                      SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                      COALESCE(SUM(total_tokens), 0) AS tokens,
                      COALESCE(SUM(total_cost_usd), 0) AS cost,
                      COALESCE(AVG(total_tasks), 0) AS avg_tasks
               FROM sessions WHERE project = ?""",
            (self.project,),
        )
        if row is None:
            return SessionStats()
        return SessionStats(
            total_sessions=row["total"],
            completed_sessions=row["completed"] or 0,
            failed_sessions=row["failed"] or 0,
            total_tokens=row["tokens"],
            total_cost_usd=row["cost"],
            avg_tasks_per_session=row["avg_tasks"],
        )

    # ── Attempts ──────────────────────────────────────────────────────────────

    async def append_attempt(self, attempt: Attempt) -> int:
        attempt.id = await self._db.execute(
            """INSERT INTO attempts
                   (session_id, project, task_id, attempt_number, model, success,
                    signature_hash, input_tokens, output_tokens, cost_usd,
                    escalated_from, error_category, error_message, started_at, ended_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (attempt.session_id, self.project, attempt.task_id, attempt.attempt_number,
             attempt.model, int(attempt.success), attempt.signature_hash,
             attempt.input_tokens, attempt.output_tokens, attempt.cost_usd,
             attempt.escalated_from,
             attempt.error_category.value if attempt.error_category else None,
             attempt.error_message, attempt.started_at or utc_now(),
             attempt.ended_at or utc_now()),
        )
        return attempt.id

    async def attempts_for(self, session_id: str,
                           task_id: Optional[str] = None) -> list[Attempt]:
        sql = "SELECT * FROM attempts WHERE session_id = ?"
        params: list = [session_id]
        if task_id is not None:
            sql += " AND task_id = ?"
            params.append(task_id)
        sql += " ORDER BY task_id, attempt_number"
        return [_attempt_from_row(r) for r in await self._db.fetchall(sql, params)]

    async def count_attempts(self) -> tuple[int, int]:
        """(total attempts, successful attempts) for the project."""
        row = await self._db.fetchone(
            """SELECT COUNT(*) AS total, COALESCE(SUM(success), 0) AS ok
               FROM attempts WHERE project = ?""",
            (self.project,),
        )
        return (row["total"], row["ok"]) if row else (0, 0)

    # ── Guardrails ────────────────────────────────────────────────────────────

    async def add_guardrail(self, g: Guardrail) -> int:
        g.created_at = g.created_at or utc_now()
        g.id = await self._db.execute(
            """INSERT INTO guardrails
                   (project, category, severity, title, problem, solution, tags,
                    related_tasks, signature_hash, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (self.project, g.category.value, g.severity.value, g.title, g.problem,
             g.solution, json.dumps(g.tags), json.dumps(g.related_tasks),
             g.signature_hash, g.created_at),
        )
        return g.id

    async def guardrails(self, limit: Optional[int] = None) -> list[Guardrail]:
        sql = "SELECT * FROM guardrails WHERE project = ? ORDER BY created_at DESC, id DESC"
        params: list = [self.project]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_guardrail_from_row(r) for r in await self._db.fetchall(sql, params)]

    async def has_guardrail(self, problem: str) -> bool:
        row = await self._db.fetchone(
            "SELECT 1 FROM guardrails WHERE project = ? AND problem = ? LIMIT 1",
            (self.project, problem),
        )
        return row is not None

    async def count_guardrails(self) -> int:
        row = await self._db.fetchone(
            "SELECT COUNT(*) AS n FROM guardrails WHERE project = ?", (self.project,)
        )
        return row["n"] if row else 0
