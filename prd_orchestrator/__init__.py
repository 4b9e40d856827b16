"""
PRD Orchestrator
================
Adaptive model routing for PRD task runs: every task is scored, routed to
the cheapest tier that history says can handle it, escalated to a stronger
model when it fails, and recorded so the next routing decision is better
informed.

Basic usage:
    from prd_orchestrator import Database, Orchestrator, load_prd
    from prd_orchestrator.backends import CommandBackend

    prd = load_prd("prd.yaml")
    db = Database("state.db")
    orch = Orchestrator(prd.project, db, backend=CommandBackend("claude -p --model {model}"))
    session = asyncio.run(orch.run(prd))

Control-plane usage (one active run per project):
    cp = ControlPlane(db, backend_factory=lambda prd: CommandBackend(...))
    await cp.start("shop", prd)
    await cp.get_status("shop")
    await cp.cancel("shop")
"""

from .models import (
    PRD, AcceptanceCriterion, Complexity, DecisionSource, ErrorCategory,
    ExecutionMode, ExecutionPlan, ModelPreference, Priority, RoutingDecision,
    RunConfig, Session, SessionStatus, Task, TaskSignature, Tier,
)
from .cascade import CascadeConfig, CascadeExecutor, CascadeOutcome, classify_error
from .control_plane import ControlPlane, ControlResult, StartOptions, StatusReport
from .cost import CostEstimator, PRDCostEstimate, TaskCostEstimate
from .dep_resolver import DependencyResolver, PRDValidationError
from .engine import InvalidTransitionError, Orchestrator, RunOptions
from .history import HistoryStore
from .hooks import EventType, HookRegistry
from .prd_file import load_prd, validate_prd
from .registry import UnknownModelError
from .router import ModelRouter
from .rules import score_task
from .signature import compute_signature, signature_for_task
from .storage import Database, StorageError

__all__ = [
    # ── Data model ───────────────────────────────────────────────────────────
    "PRD", "Task", "AcceptanceCriterion", "RunConfig", "ModelPreference",
    "Complexity", "Priority", "Tier", "ExecutionMode", "ExecutionPlan",
    "DecisionSource", "ErrorCategory", "RoutingDecision", "TaskSignature",
    "Session", "SessionStatus",
    # ── Routing ──────────────────────────────────────────────────────────────
    "compute_signature", "signature_for_task", "score_task",
    "HistoryStore", "ModelRouter", "CostEstimator", "PRDCostEstimate",
    "TaskCostEstimate",
    # ── Execution ────────────────────────────────────────────────────────────
    "DependencyResolver", "CascadeConfig", "CascadeExecutor", "CascadeOutcome",
    "classify_error", "Orchestrator", "RunOptions", "ControlPlane",
    "ControlResult", "StartOptions", "StatusReport", "EventType", "HookRegistry",
    # ── Loading & storage ────────────────────────────────────────────────────
    "load_prd", "validate_prd", "Database",
    # ── Errors ───────────────────────────────────────────────────────────────
    "PRDValidationError", "UnknownModelError", "StorageError",
    "InvalidTransitionError",
]
