"""
Cost Estimator — pre-flight token and cost scenarios per task and per PRD
=========================================================================
Three scenarios per task at the same estimated token count:

  optimistic   — the cheapest registered model
  expected     — routed model cost, blended with the premium cost by the
                 probability that the task escalates
  pessimistic  — the premium default model

Escalation probability comes from routing history for the task's signature
(share of observations on models outside the routed tier) and falls back
to a per-tier default when the signature has never been seen.

Usage:
    estimator = CostEstimator(router, history)
    report = await estimator.estimate_prd(prd)
    print(report.expected_usd)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .history import HistoryStore
from .models import PRD, Complexity, RoutingDecision, Task, Tier
from .registry import cheapest_model, default_model_for_tier, estimate_cost, find_model
from .router import ModelRouter

logger = logging.getLogger("prd_orchestrator.cost")

DEFAULT_INPUT_TOKENS = 4000
DEFAULT_OUTPUT_TOKENS = 2000

COMPLEXITY_MULTIPLIER: dict[Complexity, float] = {
    Complexity.TRIVIAL: 0.5,
    Complexity.SIMPLE: 0.75,
    Complexity.MODERATE: 1.0,
    Complexity.COMPLEX: 1.5,
    Complexity.EPIC: 2.5,
}

DEFAULT_ESCALATION_PROBABILITY: dict[Tier, float] = {
    Tier.FREE: 0.3,
    Tier.CHEAP: 0.2,
    Tier.MID: 0.1,
    Tier.PREMIUM: 0.0,
}

_FILE_FACTOR = 0.1


@dataclass(frozen=True)
class TokenEstimate:
    input: int
    output: int

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass(frozen=True)
class TaskCostEstimate:
    """
    Cost scenarios for one task.

    Attributes
    ----------
    estimated_model        : model the router picked
    tokens                 : estimated input/output tokens
    optimistic_usd         : cheapest model at the estimated tokens
    expected_usd           : routed cost blended with premium by p(escalation)
    pessimistic_usd        : premium default model at the estimated tokens
    escalation_probability : p used for the blend
    per_model_usd          : routed model and its escalation path, priced
    """
    task_id: str
    estimated_model: str
    tokens: TokenEstimate
    optimistic_usd: float
    expected_usd: float
    pessimistic_usd: float
    escalation_probability: float
    per_model_usd: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class PRDCostEstimate:
    tasks: list[TaskCostEstimate]
    total_tokens: int
    optimistic_usd: float
    expected_usd: float
    pessimistic_usd: float

    def will_exceed_budget(self, budget_usd: float) -> bool:
        """Return True if the expected total exceeds the given budget cap."""
        return self.expected_usd > budget_usd


def estimate_tokens(task: Task) -> TokenEstimate:
    factor = COMPLEXITY_MULTIPLIER[task.complexity] * (1 + _FILE_FACTOR * len(task.files_affected))
    return TokenEstimate(
        input=round(DEFAULT_INPUT_TOKENS * factor),
        output=round(DEFAULT_OUTPUT_TOKENS * factor),
    )


class CostEstimator:
    """
    Parameters
    ----------
    router:
        Used to find the model each task would be routed to.
    history:
        Source of per-signature escalation observations.
    """

    def __init__(self, router: ModelRouter, history: HistoryStore) -> None:
        self._router = router
        self._history = history

    async def escalation_probability(self, decision: RoutingDecision) -> float:
        patterns = await self._history.patterns_for(decision.signature.hash) \
            if decision.signature else []
        total = sum(p.samples for p in patterns)
        if total == 0:
            return DEFAULT_ESCALATION_PROBABILITY[decision.tier]
        other_tier = 0
        for p in patterns:
            info = find_model(p.model)
            if info is None or info.tier != decision.tier:
                other_tier += p.samples
        return other_tier / total

    async def estimate_task(self, task: Task,
                            decision: Optional[RoutingDecision] = None) -> TaskCostEstimate:
        if decision is None:
            decision = await self._router.route(task)
        tokens = estimate_tokens(task)
        p = await self.escalation_probability(decision)

        base = estimate_cost(decision.model, tokens.input, tokens.output)
        optimistic = estimate_cost(cheapest_model().id, tokens.input, tokens.output)
        premium = estimate_cost(default_model_for_tier(Tier.PREMIUM), tokens.input, tokens.output)
        # clamp away float rounding at the endpoints
        expected = min(premium, max(optimistic, base * (1 - p) + premium * p))

        per_model = {decision.model: base}
        for name in decision.escalation_path:
            per_model[name] = estimate_cost(name, tokens.input, tokens.output)

        return TaskCostEstimate(
            task_id=task.id,
            estimated_model=decision.model,
            tokens=tokens,
            optimistic_usd=optimistic,
            expected_usd=expected,
            pessimistic_usd=premium,
            escalation_probability=p,
            per_model_usd=per_model,
        )

    async def estimate_prd(self, prd: PRD) -> PRDCostEstimate:
        estimates = [await self.estimate_task(t) for t in prd.tasks]
        report = PRDCostEstimate(
            tasks=estimates,
            total_tokens=sum(e.tokens.total for e in estimates),
            optimistic_usd=sum(e.optimistic_usd for e in estimates),
            expected_usd=sum(e.expected_usd for e in estimates),
            pessimistic_usd=sum(e.pessimistic_usd for e in estimates),
        )
        logger.info(
            "Cost estimate for %s: $%.4f optimistic / $%.4f expected / $%.4f pessimistic",
            prd.project, report.optimistic_usd, report.expected_usd, report.pessimistic_usd,
        )
        return report
