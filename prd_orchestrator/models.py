"""
Core data structures for the PRD orchestrator
=============================================
Tasks and PRDs are immutable once loaded. Routing decisions, plans and
signatures are derived per dispatch. Sessions, attempts, guardrails and
routing patterns mirror rows in the SQLite store.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Complexity(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EPIC = "epic"


class Tier(str, Enum):
    """Capability/cost bracket, cheapest first."""
    FREE = "free"
    CHEAP = "cheap"
    MID = "mid"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


TIER_ORDER: list[Tier] = [Tier.FREE, Tier.CHEAP, Tier.MID, Tier.PREMIUM]


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DecisionSource(str, Enum):
    RULE = "rule"
    HISTORY = "history"
    PREFERENCE = "preference"
    ESCALATION = "escalation"


class ExecutionMode(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class ErrorCategory(str, Enum):
    SYNTAX = "syntax"
    VALIDATION = "validation"
    CAPABILITY = "capability"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED,
                        SessionStatus.CANCELLED)


class GuardrailCategory(str, Enum):
    CODE_QUALITY = "code-quality"
    TESTING = "testing"
    SECURITY = "security"
    DEPENDENCIES = "dependencies"
    PERFORMANCE = "performance"
    ARCHITECTURE = "architecture"
    API = "api"
    DATABASE = "database"
    OTHER = "other"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ─────────────────────────────────────────────
# PRD
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class AcceptanceCriterion:
    description: str
    test_command: Optional[str] = None
    expected: Optional[str] = None


@dataclass(frozen=True)
class ModelPreference:
    """
    Per-task or per-call routing override.

    model       — pick this model verbatim (score fixed at 100)
    min_tier    — never route below this tier
    no_cascade  — never escalate after a failure
    force_mode  — force single- or multi-agent execution
    """
    model: Optional[str] = None
    min_tier: Optional[Tier] = None
    no_cascade: bool = False
    force_mode: Optional[ExecutionMode] = None


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    description: str = ""
    acceptance_criteria: tuple[AcceptanceCriterion, ...] = ()
    dependencies: tuple[str, ...] = ()
    complexity: Complexity = Complexity.MODERATE
    tags: tuple[str, ...] = ()
    files_affected: tuple[str, ...] = ()
    priority: Priority = Priority.MEDIUM
    labels: tuple[str, ...] = ()
    model_preference: Optional[ModelPreference] = None


@dataclass(frozen=True)
class RunConfig:
    max_attempts: int = 3
    continue_on_failure: bool = False
    default_model: str = "sonnet"
    test_command: Optional[str] = None


@dataclass(frozen=True)
class PRD:
    project: str
    title: str
    tasks: tuple[Task, ...]
    config: RunConfig = field(default_factory=RunConfig)
    description: str = ""
    version: str = "1.0"

    def task(self, task_id: str) -> Task:
        for t in self.tasks:
            if t.id == task_id:
                return t
        raise KeyError(task_id)


# ─────────────────────────────────────────────
# Routing
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class TaskSignature:
    hash: str
    complexity: Complexity
    tags: tuple[str, ...]
    files_range: str      # "few" | "some" | "many"


@dataclass
class RoutingPattern:
    signature_hash: str
    model: str
    success_count: int = 0
    fail_count: int = 0
    avg_cost: float = 0.0
    last_updated: str = ""

    @property
    def samples(self) -> int:
        return self.success_count + self.fail_count

    @property
    def success_rate(self) -> float:
        return self.success_count / self.samples if self.samples else 0.0


@dataclass
class ExecutionPlan:
    mode: ExecutionMode = ExecutionMode.SINGLE
    parallelizable: bool = False
    suggested_agents: int = 1
    reason: str = ""


@dataclass
class ScoreBreakdown:
    base: int = 0
    files_boost: int = 0
    criteria_boost: int = 0
    tags_boost: int = 0


@dataclass
class RoutingDecision:
    task_id: str
    model: str
    tier: Tier
    source: DecisionSource
    score: int
    escalation_path: list[str] = field(default_factory=list)
    can_escalate: bool = True
    plan: ExecutionPlan = field(default_factory=ExecutionPlan)
    signature: Optional[TaskSignature] = None
    breakdown: Optional[ScoreBreakdown] = None
    reason: str = ""


# ─────────────────────────────────────────────
# Collaborator results
# ─────────────────────────────────────────────

@dataclass
class BackendResult:
    success: bool
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    error_category: Optional[ErrorCategory] = None
    error_message: Optional[str] = None
    output: str = ""


@dataclass
class QualityGateResult:
    passed: bool
    issues: list[str] = field(default_factory=list)


# ─────────────────────────────────────────────
# Persistent records
# ─────────────────────────────────────────────

@dataclass
class Session:
    id: str
    project: str
    status: SessionStatus = SessionStatus.RUNNING
    prd_path: Optional[str] = None
    started_at: str = ""
    ended_at: Optional[str] = None
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    current_task_id: Optional[str] = None
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    config: dict = field(default_factory=dict)


@dataclass
class Attempt:
    session_id: str
    task_id: str
    attempt_number: int
    model: str
    success: bool
    signature_hash: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    escalated_from: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    error_message: Optional[str] = None
    started_at: str = ""
    ended_at: str = ""
    id: Optional[int] = None


@dataclass
class Guardrail:
    project: str
    category: GuardrailCategory
    severity: Severity
    title: str
    problem: str
    solution: str
    tags: list[str] = field(default_factory=list)
    related_tasks: list[str] = field(default_factory=list)
    signature_hash: str = ""
    created_at: str = ""
    id: Optional[int] = None
