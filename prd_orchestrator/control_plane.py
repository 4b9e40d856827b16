"""
Control Plane — session control and routing introspection per project
=====================================================================
The surface a CLI or API layer talks to:

  get_status(project)                 session progress, cost, project stats
  start(project, prd, options)        one active run per project
  pause / resume / cancel(project)
  get_routing_plan(project, prd)      read-only router projection
  get_cost_estimate(project, prd)     read-only cost projection
  get_routing_stats(project)          history summary

Control calls never raise for wrong-state requests; they return a
ControlResult with success=False and a message. Storage errors do
propagate.

Live orchestrators are kept in an OrchestratorRegistry, a lock-guarded
handle table owned by the ControlPlane instance.

Usage:
    cp = ControlPlane(db, backend_factory=lambda prd: CommandBackend("claude -p --model {model}"))
    result = await cp.start("shop", prd)
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Optional

from .backends import ExecutionBackend, QualityGate
from .config import Settings
from .cost import CostEstimator, PRDCostEstimate
from .dep_resolver import DependencyResolver, PRDValidationError
from .engine import InvalidTransitionError, Orchestrator, RunOptions
from .history import HistoryStore, RoutingStats
from .hooks import HookRegistry
from .models import PRD, ModelPreference, Session, SessionStatus
from .router import ModelRouter, PRDRoutingPlan
from .sessions import SessionStore
from .storage import Database
from . import supervisor

logger = logging.getLogger("prd_orchestrator.control_plane")

BackendFactory = Callable[[PRD], ExecutionBackend]
GateFactory = Callable[[PRD], Optional[QualityGate]]


# ─────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────

@dataclass
class ControlResult:
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    session_id: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    log_file: Optional[str] = None
    pid: Optional[int] = None


@dataclass
class SessionProgress:
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    percentage: float = 0.0


@dataclass
class ProjectStats:
    total_sessions: int = 0
    total_attempts: int = 0
    total_guardrails: int = 0
    success_rate: float = 0.0     # percent, one decimal


@dataclass
class StatusReport:
    project: str
    has_active_session: bool = False
    session_id: Optional[str] = None
    status: Optional[str] = None
    progress: Optional[SessionProgress] = None
    tokens: int = 0
    cost_usd: float = 0.0
    current_task: Optional[str] = None
    started_at: Optional[str] = None
    orchestrator_running: bool = False
    stats: ProjectStats = field(default_factory=ProjectStats)


@dataclass
class StartOptions:
    prd_path: Optional[str] = None
    preference: Optional[ModelPreference] = None
    adaptive_routing: bool = True
    background: bool = False
    cwd: Optional[str] = None


def _detached_pid(session: Optional[Session]) -> Optional[int]:
    """Pid of a live process running this session from outside this process."""
    pid = session.config.get("pid") if session is not None else None
    if not pid or pid == os.getpid():
        return None
    return pid if supervisor.is_alive(pid) else None


def _progress(session: Session) -> SessionProgress:
    done = session.completed_tasks + session.failed_tasks + session.skipped_tasks
    pct = round(done / session.total_tasks * 100, 1) if session.total_tasks else 0.0
    return SessionProgress(
        completed=session.completed_tasks,
        failed=session.failed_tasks,
        skipped=session.skipped_tasks,
        total=session.total_tasks,
        percentage=pct,
    )


# ─────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────

class OrchestratorRegistry:
    """
    Project → live Orchestrator handle table.

    All access goes through the async accessors, which hold the lock.
    A handle is dropped on access once its session is terminal and its task
    loop has exited; a cancelled run still finishing its in-flight attempt
    keeps the project.
    """

    def __init__(self) -> None:
        self._handles: dict[str, Orchestrator] = {}
        self._lock: Optional[asyncio.Lock] = None  # created lazily inside the event loop

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _live(self, project: str) -> Optional[Orchestrator]:
        orch = self._handles.get(project)
        if (orch is not None and orch.status is not None and not orch.is_active
                and not orch.is_draining):
            del self._handles[project]
            return None
        return orch

    async def get(self, project: str) -> Optional[Orchestrator]:
        async with self._get_lock():
            return self._live(project)

    async def register_if_absent(self, project: str,
                                 orch: Orchestrator) -> Optional[Orchestrator]:
        """Register orch unless a live handle exists; returns the existing one."""
        async with self._get_lock():
            existing = self._live(project)
            if existing is not None:
                return existing
            self._handles[project] = orch
            return None

    async def unregister(self, project: str, orch: Orchestrator) -> None:
        async with self._get_lock():
            if self._handles.get(project) is orch:
                del self._handles[project]


# ─────────────────────────────────────────────
# ControlPlane
# ─────────────────────────────────────────────

class ControlPlane:
    """
    Parameters
    ----------
    db:
        Database shared by every project handled here.
    backend_factory:
        Builds the execution backend for a PRD.
    gate_factory:
        Builds the quality gate for a PRD; None disables the gate.
    hooks:
        Passed to every Orchestrator started here.
    settings:
        Agent cap and background-run paths.
    """

    def __init__(self, db: Database, backend_factory: BackendFactory,
                 gate_factory: Optional[GateFactory] = None,
                 hooks: Optional[HookRegistry] = None,
                 settings: Optional[Settings] = None) -> None:
        self._db = db
        self._backend_factory = backend_factory
        self._gate_factory = gate_factory
        self._hooks = hooks or HookRegistry()
        self._settings = settings or Settings()
        self.registry = OrchestratorRegistry()

    def _sessions(self, project: str) -> SessionStore:
        return SessionStore(self._db, project)

    @staticmethod
    def _unreachable(session: Session, hint: str) -> str:
        pid = _detached_pid(session)
        if pid is not None:
            return (f"Session is running in background process {pid}; "
                    "only cancel reaches it.")
        return f"Session exists but orchestrator not running. {hint}"

    async def _controllable(self, project: str) -> Optional[Orchestrator]:
        orch = await self.registry.get(project)
        return orch if orch is not None and orch.is_active else None

    # ── Status ────────────────────────────────────────────────────────────────

    async def get_status(self, project: str) -> StatusReport:
        store = self._sessions(project)
        orch = await self.registry.get(project)
        session = orch.session if orch is not None else await store.get_active_session()

        stats = await store.stats()
        total_attempts, ok_attempts = await store.count_attempts()
        report = StatusReport(
            project=project,
            orchestrator_running=orch is not None or _detached_pid(session) is not None,
            stats=ProjectStats(
                total_sessions=stats.total_sessions,
                total_attempts=total_attempts,
                total_guardrails=await store.count_guardrails(),
                success_rate=round(ok_attempts / total_attempts * 100, 1) if total_attempts else 0.0,
            ),
        )
        if session is None or session.status.is_terminal:
            return report

        report.has_active_session = True
        report.session_id = session.id
        report.status = session.status.value
        report.progress = _progress(session)
        report.tokens = session.total_tokens
        report.cost_usd = session.total_cost_usd
        report.current_task = session.current_task_id
        report.started_at = session.started_at
        return report

    # ── Control ───────────────────────────────────────────────────────────────

    async def start(self, project: str, prd: PRD,
                    options: Optional[StartOptions] = None) -> ControlResult:
        options = options or StartOptions()
        store = self._sessions(project)

        active = await store.get_active_session()
        if active is not None:
            return ControlResult(
                False, error=f"Active session already exists ({active.id}). "
                             "Use 'resume' or 'cancel' first.",
            )
        previous = await self.registry.get(project)
        if previous is not None and previous.is_draining:
            logger.info("Waiting for the previous %s run to finish its in-flight task", project)
            await previous.wait()
        if await self.registry.get(project) is not None:
            return ControlResult(
                False, error="Orchestrator already running for this project. "
                             "Use 'resume' or 'cancel' first.",
            )

        report = DependencyResolver().validate(prd.tasks)
        if not report.valid:
            return ControlResult(False, error="PRD validation failed: " + "; ".join(report.errors),
                                 errors=report.errors)

        if options.background:
            if not options.prd_path:
                return ControlResult(False, error="Background sessions need a PRD file path.")
            handle = supervisor.start_background(
                project, options.prd_path, self._settings, cwd=options.cwd,
                preference=options.preference, adaptive_routing=options.adaptive_routing,
            )
            session = await supervisor.wait_for_session(store, handle.session_id,
                                                        timeout=self._settings.start_timeout)
            if session is None and not supervisor.is_alive(handle.pid):
                tail = supervisor.tail_log(handle.log_file)
                return ControlResult(
                    False, error="Background process exited before creating its session.",
                    errors=tail, session_id=handle.session_id, pid=handle.pid,
                    log_file=str(handle.log_file),
                )
            return ControlResult(
                True, session_id=handle.session_id, pid=handle.pid,
                log_file=str(handle.log_file),
                message=f"Background session started (pid {handle.pid})",
            )

        orch = Orchestrator(
            project, self._db,
            backend=self._backend_factory(prd),
            quality_gate=self._gate_factory(prd) if self._gate_factory else None,
            hooks=self._hooks,
            options=RunOptions(
                prd_path=options.prd_path,
                preference=options.preference,
                adaptive_routing=options.adaptive_routing,
                max_agents=self._settings.max_agents,
            ),
        )
        if await self.registry.register_if_absent(project, orch) is not None:
            return ControlResult(
                False, error="Orchestrator already running for this project. "
                             "Use 'resume' or 'cancel' first.",
            )
        try:
            session = await orch.start(prd)
        except (InvalidTransitionError, PRDValidationError) as exc:
            await self.registry.unregister(project, orch)
            errors = exc.errors if isinstance(exc, PRDValidationError) else []
            return ControlResult(False, error=str(exc), errors=errors)
        except BaseException:
            await self.registry.unregister(project, orch)
            raise

        return ControlResult(True, session_id=session.id,
                             message=f"Session started with {session.total_tasks} task(s)")

    async def pause(self, project: str) -> ControlResult:
        orch = await self._controllable(project)
        if orch is None:
            active = await self._sessions(project).get_active_session()
            if active is not None:
                return ControlResult(False, error=self._unreachable(active, "Use cancel to clean up."))
            return ControlResult(False, error="No active session to pause.")
        try:
            orch.pause()
        except InvalidTransitionError as exc:
            return ControlResult(False, error=str(exc))
        return ControlResult(True, session_id=orch.session.id,
                             message="Pause requested; the session pauses after the current task.")

    async def resume(self, project: str) -> ControlResult:
        orch = await self._controllable(project)
        if orch is None:
            active = await self._sessions(project).get_active_session()
            if active is not None:
                return ControlResult(
                    False, error=self._unreachable(active, "Cannot resume orphaned session."),
                )
            return ControlResult(False, error="No active session to resume.")
        try:
            await orch.resume()
        except InvalidTransitionError as exc:
            return ControlResult(False, error=str(exc))
        return ControlResult(True, session_id=orch.session.id, message="Session resumed.")

    async def cancel(self, project: str) -> ControlResult:
        orch = await self._controllable(project)
        if orch is not None:
            try:
                await orch.cancel()
            except InvalidTransitionError as exc:
                return ControlResult(False, error=str(exc))
            return ControlResult(True, session_id=orch.session.id, message="Session cancelled.")

        store = self._sessions(project)
        active = await store.get_active_session()
        if active is None:
            return ControlResult(False, error="No active session to cancel.")
        pid = _detached_pid(active)
        await store.update_status(active.id, SessionStatus.CANCELLED)
        if pid is not None:
            logger.info("Cancelled background session %s for %s (pid %d)", active.id, project, pid)
            return ControlResult(True, session_id=active.id, pid=pid,
                                 message=f"Session cancelled; background process {pid} "
                                         "stops after its current task.")
        logger.info("Cancelled orphaned session %s for %s", active.id, project)
        return ControlResult(True, session_id=active.id,
                             message="Orphaned session cancelled.")

    async def wait(self, project: str) -> Optional[Session]:
        """Wait for the project's live orchestrator to stop, if any."""
        orch = await self.registry.get(project)
        return await orch.wait() if orch is not None else None

    # ── Introspection ─────────────────────────────────────────────────────────

    async def get_routing_plan(self, project: str, prd: PRD,
                               preference: Optional[ModelPreference] = None) -> PRDRoutingPlan:
        router = ModelRouter(HistoryStore(self._db, project))
        return await router.route_prd(prd, preference)

    async def get_cost_estimate(self, project: str, prd: PRD) -> PRDCostEstimate:
        history = HistoryStore(self._db, project)
        return await CostEstimator(ModelRouter(history), history).estimate_prd(prd)

    async def get_routing_stats(self, project: str) -> RoutingStats:
        return await HistoryStore(self._db, project).routing_stats()
