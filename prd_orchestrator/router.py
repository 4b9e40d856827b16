"""
History-Adjusted Router
=======================
Picks a model for each task. First match wins:

  1. explicit model preference (task or call)   → source "preference", score 100
  2. rule score → tier, raised to min_tier      → source "rule"
  3. history says the tier fails / cheaper tier → source "history"
     reliably succeeds
  4. best-performing model at or above the tier → source "history"

Every decision carries an escalation path for the cascade executor and an
execution plan (single- or multi-agent).
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from .history import HistoryStore
from .models import (
    PRD, DecisionSource, ExecutionMode, ExecutionPlan, ModelPreference,
    RoutingDecision, Task, Tier,
)
from .registry import default_model_for_tier, escalation_path, get_model
from .rules import score_task
from .signature import signature_for_task

logger = logging.getLogger("prd_orchestrator.router")

MAX_AGENTS = 5
FORCED_MULTI_AGENTS = 3
SCORE_PER_AGENT = 25


@dataclass
class RoutingSummary:
    by_tier: dict[str, int] = field(default_factory=dict)
    by_model: dict[str, int] = field(default_factory=dict)
    by_source: dict[str, int] = field(default_factory=dict)
    by_execution_mode: dict[str, int] = field(default_factory=dict)
    total_agents: int = 0
    parallelizable: int = 0
    escalatable: int = 0


@dataclass
class PRDRoutingPlan:
    decisions: list[RoutingDecision]
    plan: ExecutionPlan
    summary: RoutingSummary

    def decision_for(self, task_id: str) -> RoutingDecision:
        for d in self.decisions:
            if d.task_id == task_id:
                return d
        raise KeyError(task_id)


def merge_preferences(task_pref: Optional[ModelPreference],
                      call_pref: Optional[ModelPreference]) -> ModelPreference:
    """Call-level fields override task-level ones."""
    base = task_pref or ModelPreference()
    if call_pref is None:
        return base
    return ModelPreference(
        model=call_pref.model or base.model,
        min_tier=call_pref.min_tier or base.min_tier,
        no_cascade=call_pref.no_cascade or base.no_cascade,
        force_mode=call_pref.force_mode or base.force_mode,
    )


def determine_execution_plan(tier: Tier, score: int,
                             force_mode: Optional[ExecutionMode] = None) -> ExecutionPlan:
    if force_mode is not None:
        multi = force_mode == ExecutionMode.MULTI
        return ExecutionPlan(
            mode=force_mode,
            parallelizable=multi,
            suggested_agents=FORCED_MULTI_AGENTS if multi else 1,
            reason=f"forced by preference: {force_mode.value}",
        )
    if tier == Tier.PREMIUM:
        return ExecutionPlan(
            mode=ExecutionMode.MULTI,
            parallelizable=True,
            suggested_agents=min(MAX_AGENTS, max(1, math.ceil(score / SCORE_PER_AGENT))),
            reason=f"premium task (score {score}) benefits from multiple agents",
        )
    return ExecutionPlan(
        mode=ExecutionMode.SINGLE,
        parallelizable=False,
        suggested_agents=1,
        reason=f"{tier.value} tier task - single agent sufficient",
    )


class ModelRouter:
    """
    Combines scoring rules, routing history and preferences.

    Parameters
    ----------
    history:
        HistoryStore for the project being routed.
    """

    def __init__(self, history: HistoryStore) -> None:
        self._history = history

    async def route(self, task: Task,
                    preference: Optional[ModelPreference] = None) -> RoutingDecision:
        pref = merge_preferences(task.model_preference, preference)
        sig = signature_for_task(task)

        if pref.model:
            info = get_model(pref.model)
            decision = self._decision(task, info.id, info.tier, DecisionSource.PREFERENCE,
                                      100, pref, sig)
            decision.reason = "explicit model preference"
            return decision

        scored = score_task(task)
        tier, model, source = scored.tier, scored.suggested_model, DecisionSource.RULE
        reason = f"score {scored.score} → {tier.value}"

        if pref.min_tier is not None and tier.rank < pref.min_tier.rank:
            tier = pref.min_tier
            model = default_model_for_tier(tier)
            reason += f", raised to min tier {tier.value}"

        adjustment = await self._history.analyze(sig.hash, tier, pref.min_tier)
        if adjustment.applies:
            logger.info("Task %s: history %s %s → %s (%s)", task.id,
                        adjustment.direction, tier.value, adjustment.tier.value,
                        adjustment.reason)
            tier = adjustment.tier
            model = default_model_for_tier(tier)
            source = DecisionSource.HISTORY
            reason = adjustment.reason
        else:
            reason += f"; history: {await self._history.sample_status(sig.hash, tier)}"

        best = await self._history.best_model(sig.hash, tier)
        if best is not None:
            info = get_model(best.model)
            if info.id != model:
                logger.debug("Task %s: history prefers %s (%.0f%% over %d samples)",
                             task.id, info.id, best.success_rate * 100, best.samples)
                model, tier, source = info.id, info.tier, DecisionSource.HISTORY
                reason = (f"history prefers {info.id} "
                          f"({best.success_rate:.0%} over {best.samples} samples)")

        decision = self._decision(task, model, tier, source, scored.score, pref, sig)
        decision.breakdown = scored.breakdown
        decision.reason = reason
        return decision

    def _decision(self, task, model, tier, source, score, pref, sig) -> RoutingDecision:
        return RoutingDecision(
            task_id=task.id,
            model=model,
            tier=tier,
            source=source,
            score=score,
            escalation_path=escalation_path(model),
            can_escalate=not pref.no_cascade and tier != Tier.PREMIUM,
            plan=determine_execution_plan(tier, score, pref.force_mode),
            signature=sig,
        )

    async def route_prd(self, prd: PRD,
                        preference: Optional[ModelPreference] = None) -> PRDRoutingPlan:
        decisions = [await self.route(t, preference) for t in prd.tasks]
        return PRDRoutingPlan(
            decisions=decisions,
            plan=overall_plan(decisions),
            summary=summarize(decisions),
        )


def overall_plan(decisions: list[RoutingDecision]) -> ExecutionPlan:
    n = len(decisions)
    multi = sum(1 for d in decisions if d.plan.mode == ExecutionMode.MULTI)
    parallel = sum(1 for d in decisions if d.plan.parallelizable)
    premium = sum(1 for d in decisions if d.tier == Tier.PREMIUM)
    ratio = parallel / n if n else 0.0

    if multi > 0 or (ratio > 0.5 and n >= 3) or premium >= 2 or (premium >= 1 and n >= 3):
        return ExecutionPlan(
            mode=ExecutionMode.MULTI,
            parallelizable=True,
            suggested_agents=min(MAX_AGENTS, max(1, math.ceil(n / 2))),
            reason=(f"{premium} premium task(s), {parallel}/{n} parallelizable "
                    f"- multi-agent recommended"),
        )
    return ExecutionPlan(
        mode=ExecutionMode.SINGLE,
        parallelizable=False,
        suggested_agents=1,
        reason=f"simple PRD with {n} task(s) - single agent efficient",
    )


def summarize(decisions: list[RoutingDecision]) -> RoutingSummary:
    return RoutingSummary(
        by_tier=dict(Counter(d.tier.value for d in decisions)),
        by_model=dict(Counter(d.model for d in decisions)),
        by_source=dict(Counter(d.source.value for d in decisions)),
        by_execution_mode=dict(Counter(d.plan.mode.value for d in decisions)),
        total_agents=sum(d.plan.suggested_agents for d in decisions),
        parallelizable=sum(1 for d in decisions if d.plan.parallelizable),
        escalatable=sum(1 for d in decisions if d.can_escalate),
    )
