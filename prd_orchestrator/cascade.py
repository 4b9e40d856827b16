"""
Cascade Executor — retry, escalate or give up on a single task
==============================================================
One call to execute() drives a task through as many attempts as the policy
allows:

  success                      → done
  category in escalate_on      → next model in the escalation path
  retries left                 → same model again
  retries used up              → next model in the escalation path
  nothing left to escalate to  → give up, task fails for this session

syntax/validation are retried on the same model first; capability/timeout
escalate straight away; unknown retries max_retries times and then
escalates. Moving to a new model resets the retry counter.

Every attempt is recorded in the HistoryStore as one observation of its
(signature, model) pair. Exceptions from the backend or the quality gate
never leave this module; they are classified like any other failure.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from .history import HistoryStore
from .hooks import EventType, HookRegistry
from .models import (
    BackendResult, ErrorCategory, QualityGateResult, RoutingDecision, Task,
)
from .storage import utc_now
from .tracing import traced_attempt

if TYPE_CHECKING:
    from .backends import ExecutionBackend, QualityGate

logger = logging.getLogger("prd_orchestrator.cascade")

_KEYWORDS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.SYNTAX, (
        "syntax error", "syntaxerror", "parse error", "unexpected token",
        "invalid json", "unterminated",
    )),
    (ErrorCategory.VALIDATION, (
        "validation failed", "validation error", "invalid input",
        "missing required", "assertion", "tests failed", "quality gate",
    )),
    (ErrorCategory.CAPABILITY, (
        "too complex", "context too long", "cannot handle", "not capable",
        "exceeds context", "context length", "rate limit", "overloaded",
    )),
    (ErrorCategory.TIMEOUT, (
        "timeout", "timed out", "deadline exceeded",
    )),
]


def classify_error(message: Optional[str]) -> ErrorCategory:
    """Map a free-text failure message onto an ErrorCategory."""
    if not message:
        return ErrorCategory.UNKNOWN
    text = message.lower()
    for category, keywords in _KEYWORDS:
        if any(k in text for k in keywords):
            return category
    return ErrorCategory.UNKNOWN


@dataclass
class CascadeConfig:
    max_retries: int = 3
    retry_same_model: frozenset[ErrorCategory] = frozenset(
        {ErrorCategory.SYNTAX, ErrorCategory.VALIDATION}
    )
    escalate_on: frozenset[ErrorCategory] = frozenset(
        {ErrorCategory.CAPABILITY, ErrorCategory.TIMEOUT}
    )

    @classmethod
    def for_max_attempts(cls, max_attempts: int) -> "CascadeConfig":
        """Policy where each model gets at most max_attempts tries."""
        return cls(max_retries=max(0, max_attempts - 1))


@dataclass
class AttemptOutcome:
    model: str
    success: bool
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    error_category: Optional[ErrorCategory] = None
    error_message: Optional[str] = None
    escalated_from: Optional[str] = None
    issues: list[str] = field(default_factory=list)
    started_at: str = ""
    ended_at: str = ""


@dataclass
class CascadeOutcome:
    task_id: str
    success: bool
    final_model: str
    attempts: list[AttemptOutcome] = field(default_factory=list)
    escalations: int = 0

    @property
    def total_cost(self) -> float:
        return sum(a.cost_usd for a in self.attempts)

    @property
    def total_tokens(self) -> int:
        return sum(a.tokens_in + a.tokens_out for a in self.attempts)

    @property
    def last_error(self) -> Optional[AttemptOutcome]:
        return next((a for a in reversed(self.attempts) if not a.success), None)


AttemptCallback = Callable[[AttemptOutcome], Awaitable[None]]


class CascadeExecutor:
    """
    Parameters
    ----------
    backend:
        Execution backend collaborator.
    history:
        Receives one record() per attempt.
    config:
        Retry/escalation policy.
    quality_gate:
        Optional check run after each backend success; a failing gate turns
        the attempt into a validation failure.
    hooks:
        Fires MODEL_ESCALATED on every escalation.
    """

    def __init__(self, backend: ExecutionBackend, history: HistoryStore,
                 config: Optional[CascadeConfig] = None,
                 quality_gate: Optional[QualityGate] = None,
                 hooks: Optional[HookRegistry] = None) -> None:
        self._backend = backend
        self._history = history
        self.config = config or CascadeConfig()
        self._gate = quality_gate
        self._hooks = hooks or HookRegistry()

    async def execute(self, task: Task, decision: RoutingDecision, prompt: str,
                      on_attempt: Optional[AttemptCallback] = None) -> CascadeOutcome:
        sig_hash = decision.signature.hash if decision.signature else ""
        path = list(decision.escalation_path) if decision.can_escalate else []
        model = decision.model
        escalated_from: Optional[str] = None
        retries = 0
        outcome = CascadeOutcome(task_id=task.id, success=False, final_model=model)

        while True:
            attempt = await self._run_attempt(task, model, prompt, len(outcome.attempts) + 1)
            attempt.escalated_from = escalated_from
            outcome.attempts.append(attempt)
            outcome.final_model = model

            await self._history.record(sig_hash, model, attempt.success, attempt.cost_usd)
            if on_attempt is not None:
                await on_attempt(attempt)

            if attempt.success:
                outcome.success = True
                return outcome

            category = attempt.error_category or ErrorCategory.UNKNOWN
            if self._retryable(category) and retries < self.config.max_retries:
                retries += 1
                logger.info("Task %s: %s failure on %s, retry %d/%d",
                            task.id, category.value, model, retries, self.config.max_retries)
                continue

            if not path:
                logger.warning("Task %s: giving up on %s after %s failure (%s)",
                               task.id, model, category.value,
                               "escalation disabled" if not decision.can_escalate
                               else "escalation path exhausted")
                return outcome

            next_model = path.pop(0)
            logger.info("Task %s: escalating %s → %s after %s failure",
                        task.id, model, next_model, category.value)
            self._hooks.fire(EventType.MODEL_ESCALATED, task_id=task.id,
                             from_model=model, to_model=next_model, category=category)
            escalated_from = model
            model = next_model
            retries = 0
            outcome.escalations += 1

    def _retryable(self, category: ErrorCategory) -> bool:
        if category in self.config.escalate_on:
            return False
        return category in self.config.retry_same_model or category == ErrorCategory.UNKNOWN

    async def _run_attempt(self, task: Task, model: str, prompt: str,
                           number: int) -> AttemptOutcome:
        started = utc_now()
        with traced_attempt(task.id, model, number) as span:
            try:
                result = await self._backend.run(model, prompt)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Task %s: backend raised on %s: %s", task.id, model, exc)
                result = BackendResult(success=False,
                                       error_message=str(exc) or type(exc).__name__)
                result.error_category = classify_error(result.error_message)

            issues: list[str] = []
            if result.success and self._gate is not None:
                gate = await self._check_gate(task)
                if not gate.passed:
                    issues = gate.issues
                    result.success = False
                    result.error_category = ErrorCategory.VALIDATION
                    result.error_message = "Quality gate failed: " + "; ".join(issues)

            category = None
            if not result.success:
                category = result.error_category or classify_error(result.error_message)
            span.set_attribute("attempt.success", result.success)

        return AttemptOutcome(
            model=model,
            success=result.success,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            cost_usd=result.cost_usd,
            error_category=category,
            error_message=None if result.success else result.error_message,
            issues=issues,
            started_at=started,
            ended_at=utc_now(),
        )

    async def _check_gate(self, task: Task) -> QualityGateResult:
        try:
            return await self._gate.check(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Task %s: quality gate raised: %s", task.id, exc)
            return QualityGateResult(passed=False, issues=[f"quality gate error: {exc}"])
