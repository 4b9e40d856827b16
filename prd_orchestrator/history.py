"""
History Store — per-signature, per-model outcome counters
=========================================================
Every task attempt ends up here as one observation of a
(signature, model) pair. The router reads the counters back to decide
whether a tier has been failing for this kind of task (escalate), whether a
cheaper tier has been reliably succeeding (de-escalate), and which specific
model has the best track record.

No statistical decision is made on fewer than MIN_SAMPLES observations.

Upserts are a single INSERT … ON CONFLICT statement, so concurrent records
from multi-agent runs never lose an update.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .models import RoutingPattern, Tier
from .registry import find_model, next_tier, previous_tier
from .storage import Database, utc_now

logger = logging.getLogger("prd_orchestrator.history")

MIN_SAMPLES = 3
FAIL_THRESHOLD = 0.5
SUCCESS_THRESHOLD = 0.8
CONFIDENCE_SAMPLES = 10
MIN_CONFIDENCE = 0.5


# ─────────────────────────────────────────────────────────────────────────────
# Return types
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TierStats:
    tier: Tier
    success: int = 0
    fail: int = 0

    @property
    def samples(self) -> int:
        return self.success + self.fail

    @property
    def success_rate(self) -> float:
        return self.success / self.samples if self.samples else 0.0

    @property
    def fail_rate(self) -> float:
        return self.fail / self.samples if self.samples else 0.0

    @property
    def sufficient(self) -> bool:
        return self.samples >= MIN_SAMPLES


@dataclass
class HistoryAdjustment:
    """Tier change suggested by history; tier is None when nothing fires."""
    tier: Optional[Tier] = None
    direction: Optional[str] = None      # "escalate" | "de-escalate"
    confidence: float = 0.0
    samples: int = 0
    reason: str = ""

    @property
    def applies(self) -> bool:
        return self.tier is not None


@dataclass
class RoutingStats:
    total_patterns: int = 0
    patterns_with_sufficient_data: int = 0
    model_distribution: dict[str, dict[str, int]] = field(default_factory=dict)
    avg_escalation_rate: float = 0.0


def confidence_for(samples: int) -> float:
    return min(1.0, samples / CONFIDENCE_SAMPLES)


def stats_by_tier(patterns: list[RoutingPattern]) -> dict[Tier, TierStats]:
    """Aggregate patterns per model tier. Unregistered models are ignored."""
    out: dict[Tier, TierStats] = {}
    for p in patterns:
        info = find_model(p.model)
        if info is None:
            continue
        st = out.setdefault(info.tier, TierStats(info.tier))
        st.success += p.success_count
        st.fail += p.fail_count
    return out


# ─────────────────────────────────────────────────────────────────────────────
# HistoryStore
# ─────────────────────────────────────────────────────────────────────────────

class HistoryStore:
    """
    Routing history for one project.

    Parameters
    ----------
    db:
        Shared Database; the store never opens its own connection.
    project:
        Project key; every read and write is scoped to it.
    """

    def __init__(self, db: Database, project: str) -> None:
        self._db = db
        self.project = project

    # ── Writes ────────────────────────────────────────────────────────────────

    async def record(self, signature_hash: str, model: str,
                     success: bool, cost: float) -> None:
        info = find_model(model)
        model_id = info.id if info else model
        await self._db.execute(
            """INSERT INTO routing_patterns
                   (project, signature_hash, model, success_count, fail_count,
                    avg_cost, last_updated)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(project, signature_hash, model) DO UPDATE SET
                   avg_cost = (routing_patterns.avg_cost
                               * (routing_patterns.success_count + routing_patterns.fail_count)
                               + excluded.avg_cost)
                              / (routing_patterns.success_count + routing_patterns.fail_count + 1),
                   success_count = routing_patterns.success_count + excluded.success_count,
                   fail_count    = routing_patterns.fail_count + excluded.fail_count,
                   last_updated  = excluded.last_updated""",
            (self.project, signature_hash, model_id,
             1 if success else 0, 0 if success else 1, float(cost), utc_now()),
        )
        logger.debug("Recorded %s for %s on %s (cost=$%.4f)",
                     "success" if success else "failure", signature_hash, model_id, cost)

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def patterns_for(self, signature_hash: str) -> list[RoutingPattern]:
        rows = await self._db.fetchall(
            """SELECT signature_hash, model, success_count, fail_count,
                      avg_cost, last_updated
               FROM routing_patterns
               WHERE project = ? AND signature_hash = ?
               ORDER BY success_count DESC, model""",
            (self.project, signature_hash),
        )
        return [RoutingPattern(*tuple(r)) for r in rows]

    async def all_patterns(self) -> list[RoutingPattern]:
        rows = await self._db.fetchall(
            """SELECT signature_hash, model, success_count, fail_count,
                      avg_cost, last_updated
               FROM routing_patterns
               WHERE project = ?
               ORDER BY success_count DESC, signature_hash, model""",
            (self.project,),
        )
        return [RoutingPattern(*tuple(r)) for r in rows]

    async def sample_status(self, signature_hash: str, tier: Tier) -> str:
        st = stats_by_tier(await self.patterns_for(signature_hash)).get(tier)
        if st is None or not st.sufficient:
            return "insufficient data"
        return f"{st.samples} samples, {st.success_rate:.0%} success"

    # ── Decisions ─────────────────────────────────────────────────────────────

    async def analyze(self, signature_hash: str, current_tier: Tier,
                      min_tier: Optional[Tier] = None) -> HistoryAdjustment:
        """
        Suggest a one-tier move for this signature.

        Escalation is checked first: the current tier failing more than half
        of at least MIN_SAMPLES observations moves up one tier. Otherwise,
        if the next cheaper tier succeeded more than 80% of at least
        MIN_SAMPLES observations with confidence above MIN_CONFIDENCE, move
        down one tier (never below min_tier).
        """
        by_tier = stats_by_tier(await self.patterns_for(signature_hash))

        current = by_tier.get(current_tier)
        up = next_tier(current_tier)
        if current and current.sufficient and current.fail_rate > FAIL_THRESHOLD and up:
            return HistoryAdjustment(
                tier=up,
                direction="escalate",
                confidence=confidence_for(current.samples),
                samples=current.samples,
                reason=(f"{current_tier.value} failed {current.fail}/{current.samples} "
                        f"times for this task type"),
            )

        down = previous_tier(current_tier)
        if down is None or (min_tier is not None and down.rank < min_tier.rank):
            return HistoryAdjustment()
        cheaper = by_tier.get(down)
        if cheaper and cheaper.sufficient and cheaper.success_rate > SUCCESS_THRESHOLD:
            confidence = confidence_for(cheaper.samples)
            if confidence > MIN_CONFIDENCE:
                return HistoryAdjustment(
                    tier=down,
                    direction="de-escalate",
                    confidence=confidence,
                    samples=cheaper.samples,
                    reason=(f"{down.value} succeeded {cheaper.success}/{cheaper.samples} "
                            f"times for this task type"),
                )
        return HistoryAdjustment()

    async def best_model(self, signature_hash: str,
                         min_tier: Tier) -> Optional[RoutingPattern]:
        """Best-performing model at or above min_tier with enough samples."""
        candidates = []
        for p in await self.patterns_for(signature_hash):
            info = find_model(p.model)
            if info is None or info.tier.rank < min_tier.rank:
                continue
            if p.samples < MIN_SAMPLES:
                continue
            candidates.append(p)
        if not candidates:
            return None
        candidates.sort(key=lambda p: (-p.success_rate, p.avg_cost))
        return candidates[0]

    async def routing_stats(self) -> RoutingStats:
        patterns = await self.all_patterns()
        distribution: dict[str, dict[str, int]] = {}
        for p in patterns:
            entry = distribution.setdefault(p.model, {"success": 0, "fail": 0})
            entry["success"] += p.success_count
            entry["fail"] += p.fail_count

        row = await self._db.fetchone(
            """SELECT COUNT(*) AS total,
                      SUM(CASE WHEN escalated_from IS NOT NULL THEN 1 ELSE 0 END) AS escalated
               FROM attempts WHERE project = ?""",
            (self.project,),
        )
        total = row["total"] if row else 0
        escalated = (row["escalated"] or 0) if row else 0

        return RoutingStats(
            total_patterns=len(patterns),
            patterns_with_sufficient_data=sum(1 for p in patterns if p.samples >= MIN_SAMPLES),
            model_distribution=distribution,
            avg_escalation_rate=escalated / total if total else 0.0,
        )
