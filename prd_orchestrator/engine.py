"""
Orchestrator — session state machine driving a PRD through the cascade
======================================================================
States:

    idle → running → paused → running …
                   → completed | failed | cancelled      (terminal)
           paused  → cancelled

One Orchestrator owns one session for one project. start() validates the
PRD, creates the session and launches the task loop as an asyncio task;
wait() joins it. Tasks run in dependency order, one at a time in
single-agent mode, or level by level in multi-agent mode with at most
min(suggested agents, max_agents) tasks in flight.

pause() and cancel() are cooperative: they are honoured at task
boundaries, and an attempt already handed to the backend runs to
completion and is recorded. resume() re-enters the loop at the first task
without a final outcome.

Per task:
    route → relevant guardrails → cascade (backend + quality gate)
          → attempts persisted → counters updated → guardrail on failure
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from functools import partial
from typing import Optional

from .backends import ExecutionBackend, QualityGate
from .cascade import AttemptOutcome, CascadeConfig, CascadeExecutor
from .dep_resolver import DependencyResolver
from .guardrails import build_task_prompt, record_lesson, relevant_guardrails
from .history import HistoryStore
from .hooks import EventType, HookRegistry
from .models import (
    PRD, Attempt, ExecutionMode, ExecutionPlan, ModelPreference,
    RoutingDecision, Session, SessionStatus, Task,
)
from .prd_file import validate_prd
from .router import ModelRouter
from .sessions import SessionStore
from .storage import Database, StorageError, utc_now
from .tracing import traced_task

logger = logging.getLogger("prd_orchestrator.engine")

_COMPLETED = "completed"
_FAILED = "failed"
_SKIPPED = "skipped"


class InvalidTransitionError(RuntimeError):
    """Raised when a control call is not valid in the current state."""


@dataclass
class RunOptions:
    """
    Per-run knobs.

    prd_path          — recorded on the session row
    session_id        — pre-generated id (background runs)
    preference        — call-level routing preference for every task
    adaptive_routing  — False routes every task to the PRD's default model
    max_agents        — hard cap on concurrent tasks in multi-agent mode
    watch_external_cancel — poll the session row for a cancel written by
                            another process (detached runs)
    """
    prd_path: Optional[str] = None
    session_id: Optional[str] = None
    preference: Optional[ModelPreference] = None
    adaptive_routing: bool = True
    max_agents: int = 5
    watch_external_cancel: bool = False


class Orchestrator:
    """
    Parameters
    ----------
    project:
        Project key for every persisted row.
    db:
        Shared Database; owned and closed by the caller.
    backend:
        Execution backend collaborator.
    quality_gate:
        Optional pass/fail check after each successful backend call.
    hooks:
        Lifecycle hooks; a fresh registry when omitted.
    options:
        RunOptions for this run.
    """

    def __init__(self, project: str, db: Database, backend: ExecutionBackend,
                 quality_gate: Optional[QualityGate] = None,
                 hooks: Optional[HookRegistry] = None,
                 options: Optional[RunOptions] = None) -> None:
        self.project = project
        self.options = options or RunOptions()
        self.hooks = hooks or HookRegistry()
        self.history = HistoryStore(db, project)
        self.sessions = SessionStore(db, project)
        self.router = ModelRouter(self.history)
        self._backend = backend
        self._gate = quality_gate
        self._resolver = DependencyResolver()

        self._prd: Optional[PRD] = None
        self._session: Optional[Session] = None
        self._order: list[str] = []
        self._plan = ExecutionPlan()
        self._cascade: Optional[CascadeExecutor] = None
        self._finished: dict[str, str] = {}
        self._attempt_numbers: dict[str, int] = {}
        self._pause_requested = False
        self._cancel_requested = False
        self._aborted = False
        self._loop_task: Optional[asyncio.Task] = None

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def status(self) -> Optional[SessionStatus]:
        """None while idle."""
        return self._session.status if self._session else None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def execution_order(self) -> list[str]:
        return list(self._order)

    @property
    def plan(self) -> ExecutionPlan:
        return self._plan

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.RUNNING, SessionStatus.PAUSED)

    @property
    def is_draining(self) -> bool:
        """Stopped accepting control calls, but the task loop has not exited yet."""
        return (not self.is_active and self._loop_task is not None
                and not self._loop_task.done())

    # ── Control ───────────────────────────────────────────────────────────────

    async def start(self, prd: PRD) -> Session:
        """
        Validate the PRD, create a session and launch the task loop.

        Raises
        ------
        InvalidTransitionError — this instance already ran, or the project
                                 already has an active session
        PRDValidationError     — duplicates, cycles or missing dependencies
        StorageError           — the session could not be persisted
        """
        if self._session is not None:
            raise InvalidTransitionError(
                f"Orchestrator already has session {self._session.id} "
                f"({self._session.status.value})"
            )
        existing = await self.sessions.get_active_session()
        if existing is not None:
            raise InvalidTransitionError(
                f"Active session already exists ({existing.id}). "
                "Use 'resume' or 'cancel' first."
            )

        self._order = validate_prd(prd)
        self._prd = prd

        routing = await self.router.route_prd(prd, self._preference())
        self._plan = routing.plan
        self._cascade = CascadeExecutor(
            self._backend, self.history,
            CascadeConfig.for_max_attempts(prd.config.max_attempts),
            self._gate, self.hooks,
        )
        self._session = await self.sessions.create_session(
            total_tasks=len(prd.tasks),
            prd_path=self.options.prd_path,
            session_id=self.options.session_id,
            config={
                "max_attempts": prd.config.max_attempts,
                "continue_on_failure": prd.config.continue_on_failure,
                "default_model": prd.config.default_model,
                "execution_mode": self._plan.mode.value,
                "suggested_agents": self._plan.suggested_agents,
                "adaptive_routing": self.options.adaptive_routing,
                "pid": os.getpid(),
            },
        )
        logger.info("Session %s started for %s: %d tasks, %s mode (%s)",
                    self._session.id, self.project, len(prd.tasks),
                    self._plan.mode.value, self._plan.reason)
        self.hooks.fire(EventType.SESSION_STARTED, session=self._session)
        self._launch()
        return self._session

    async def run(self, prd: PRD) -> Session:
        """start() and wait for the loop to stop."""
        await self.start(prd)
        return await self.wait()

    async def wait(self) -> Session:
        """Wait until the loop stops (terminal state or paused)."""
        if self._loop_task is not None:
            await self._loop_task
        if self._session is None:
            raise InvalidTransitionError("Orchestrator has not been started")
        return self._session

    def pause(self) -> None:
        """Request a pause; it takes effect at the next task boundary."""
        self._require(SessionStatus.RUNNING, "pause")
        self._pause_requested = True
        logger.info("Session %s: pause requested", self._session.id)

    async def resume(self) -> None:
        self._require(SessionStatus.PAUSED, "resume")
        self._pause_requested = False
        self._session.status = SessionStatus.RUNNING
        await self.sessions.update_status(self._session.id, SessionStatus.RUNNING)
        self.hooks.fire(EventType.SESSION_RESUMED, session_id=self._session.id)
        self._launch()

    async def cancel(self) -> None:
        """Stop dispatching new tasks. In-flight attempts finish and are recorded."""
        if self.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            self._raise_invalid("cancel")
        self._cancel_requested = True
        self._session.status = SessionStatus.CANCELLED
        self._session.ended_at = utc_now()
        await self.sessions.update_status(self._session.id, SessionStatus.CANCELLED)
        self.hooks.fire(EventType.SESSION_CANCELLED, session_id=self._session.id)

    def _require(self, state: SessionStatus, action: str) -> None:
        if self.status != state:
            self._raise_invalid(action)

    def _raise_invalid(self, action: str) -> None:
        state = self.status.value if self.status else "idle"
        raise InvalidTransitionError(f"Session is {state}, cannot {action}.")

    # ── Task loop ─────────────────────────────────────────────────────────────

    def _launch(self) -> None:
        self._loop_task = asyncio.create_task(
            self._run_loop(), name=f"orchestrator:{self.project}"
        )
        self._loop_task.add_done_callback(_consume_exception)

    def _should_stop(self) -> bool:
        return self._cancel_requested or self._pause_requested or self._aborted

    async def _at_boundary(self) -> bool:
        """Task boundary: pick up a cancel written by another process, then decide."""
        if self.options.watch_external_cancel and not self._cancel_requested:
            stored = await self.sessions.get_session(self._session.id)
            if stored is not None and stored.status == SessionStatus.CANCELLED:
                logger.info("Session %s cancelled externally", self._session.id)
                self._cancel_requested = True
                self._session.status = SessionStatus.CANCELLED
                self._session.ended_at = stored.ended_at
        return self._should_stop()

    async def _run_loop(self) -> None:
        try:
            if self._plan.mode == ExecutionMode.MULTI:
                await self._run_levels()
            else:
                await self._run_sequential()
            await self._finish()
        except StorageError:
            logger.exception("Session %s: storage failure, stopping", self._session.id)
            self._session.status = SessionStatus.FAILED
            raise

    async def _run_sequential(self) -> None:
        for task_id in self._order:
            if task_id in self._finished:
                continue
            if await self._at_boundary():
                return
            await self._process_task(task_id)

    async def _run_levels(self) -> None:
        agents_cap = max(1, min(self._plan.suggested_agents, self.options.max_agents))
        for level_idx, level in enumerate(self._resolver.levels(self._prd.tasks)):
            runnable = [tid for tid in level if tid not in self._finished]
            if not runnable:
                continue
            if await self._at_boundary():
                return
            semaphore = asyncio.Semaphore(min(agents_cap, len(runnable)))

            async def _run_one(task_id: str) -> None:
                async with semaphore:
                    if await self._at_boundary():
                        return
                    await self._process_task(task_id)

            logger.info("Executing level %d: %d task(s), up to %d in parallel: %s",
                        level_idx, len(runnable), min(agents_cap, len(runnable)), runnable)
            await asyncio.gather(*(_run_one(tid) for tid in runnable))

    async def _process_task(self, task_id: str) -> None:
        task = self._prd.task(task_id)
        session = self._session

        unmet = [d for d in task.dependencies if self._finished.get(d) != _COMPLETED]
        if unmet:
            logger.warning("Skipping %s: dependencies did not complete: %s", task_id, unmet)
            self._finished[task_id] = _SKIPPED
            session.skipped_tasks += 1
            await self.sessions.save_session(session)
            self.hooks.fire(EventType.TASK_SKIPPED, task_id=task_id,
                            reason=f"dependencies did not complete: {', '.join(unmet)}")
            return

        session.current_task_id = task_id
        await self.sessions.save_session(session)

        decision = await self._route(task)
        self.hooks.fire(EventType.TASK_STARTED, task_id=task_id, decision=decision)
        logger.info("Task %s → %s (%s tier, %s, score %d)", task_id, decision.model,
                    decision.tier.value, decision.source.value, decision.score)

        prompt = build_task_prompt(task, await relevant_guardrails(self.sessions, task))
        with traced_task(task_id, decision.tier.value, decision.model) as span:
            outcome = await self._cascade.execute(
                task, decision, prompt,
                on_attempt=partial(self._record_attempt, task, decision),
            )
            span.set_attribute("task.success", outcome.success)
            span.set_attribute("task.escalations", outcome.escalations)

        if outcome.success:
            self._finished[task_id] = _COMPLETED
            session.completed_tasks += 1
        else:
            self._finished[task_id] = _FAILED
            session.failed_tasks += 1
            guardrail = await record_lesson(self.sessions, task, outcome)
            if guardrail is not None:
                self.hooks.fire(EventType.GUARDRAIL_ADDED, guardrail=guardrail)
            if not self._prd.config.continue_on_failure:
                logger.error("Task %s failed; aborting session %s", task_id, session.id)
                self._aborted = True
        await self.sessions.save_session(session)
        self.hooks.fire(EventType.TASK_COMPLETED, task_id=task_id, outcome=outcome)

    async def _route(self, task: Task) -> RoutingDecision:
        return await self.router.route(task, self._preference())

    def _preference(self) -> Optional[ModelPreference]:
        if self.options.adaptive_routing:
            return self.options.preference
        return ModelPreference(model=self._prd_default_model())

    def _prd_default_model(self) -> str:
        return self._prd.config.default_model if self._prd else "sonnet"

    async def _record_attempt(self, task: Task, decision: RoutingDecision,
                              attempt: AttemptOutcome) -> None:
        number = self._attempt_numbers.get(task.id, 0) + 1
        self._attempt_numbers[task.id] = number
        await self.sessions.append_attempt(Attempt(
            session_id=self._session.id,
            task_id=task.id,
            attempt_number=number,
            model=attempt.model,
            success=attempt.success,
            signature_hash=decision.signature.hash if decision.signature else "",
            input_tokens=attempt.tokens_in,
            output_tokens=attempt.tokens_out,
            cost_usd=attempt.cost_usd,
            escalated_from=attempt.escalated_from,
            error_category=attempt.error_category,
            error_message=attempt.error_message,
            started_at=attempt.started_at,
            ended_at=attempt.ended_at,
        ))
        self._session.total_tokens += attempt.tokens_in + attempt.tokens_out
        self._session.total_cost_usd += attempt.cost_usd
        await self.sessions.save_session(self._session)

    async def _finish(self) -> None:
        session = self._session
        if session.status == SessionStatus.CANCELLED:
            logger.info("Session %s cancelled", session.id)
            session.current_task_id = None
            await self.sessions.save_session(session)
            self._log_summary()
            return
        if self._pause_requested and not self._aborted and len(self._finished) < len(self._order):
            session.status = SessionStatus.PAUSED
            await self.sessions.save_session(session)
            logger.info("Session %s paused", session.id)
            self.hooks.fire(EventType.SESSION_PAUSED, session_id=session.id)
            return

        self._pause_requested = False
        session.status = SessionStatus.FAILED if self._aborted else SessionStatus.COMPLETED
        session.ended_at = utc_now()
        session.current_task_id = None
        await self.sessions.save_session(session)
        self.hooks.fire(EventType.SESSION_FINISHED, session=session)
        self._log_summary()

    def _log_summary(self) -> None:
        s = self._session
        logger.info("=" * 60)
        logger.info("SESSION %s: %s", s.id, s.status.value)
        logger.info("Tasks: %d completed, %d failed, %d skipped of %d",
                    s.completed_tasks, s.failed_tasks, s.skipped_tasks, s.total_tasks)
        logger.info("Tokens: %d  Cost: $%.4f", s.total_tokens, s.total_cost_usd)
        for tid in self._order:
            logger.info("  %s: %s (%d attempt(s))", tid,
                        self._finished.get(tid, "pending"), self._attempt_numbers.get(tid, 0))
        logger.info("=" * 60)


def _consume_exception(task: asyncio.Task) -> None:
    # already logged in _run_loop; wait() still re-raises
    if not task.cancelled():
        task.exception()
