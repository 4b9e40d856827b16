"""
Scoring Rules Engine
====================
Turns task attributes into a 0–100 difficulty score and a model tier.

    score = base(complexity)
          + 5 per affected file beyond 2
          + 3 per acceptance criterion beyond 2
          + sum(tag boosts)
    clamped to [0, 100]

Tier thresholds: free ≤20, cheap ≤40, mid ≤65, premium above.
"""
from __future__ import annotations

from dataclasses import dataclass

from .models import Complexity, ScoreBreakdown, Task, Tier
from .registry import default_model_for_tier

COMPLEXITY_BASE: dict[Complexity, int] = {
    Complexity.TRIVIAL: 10,
    Complexity.SIMPLE: 25,
    Complexity.MODERATE: 50,
    Complexity.COMPLEX: 75,
    Complexity.EPIC: 95,
}

TAG_BOOSTS: dict[str, int] = {
    "architecture": 20,
    "security": 15,
    "database": 10,
    "performance": 10,
    "api": 5,
    "refactor": 5,
    "test": -5,
    "docs": -10,
    "lint": -15,
    "typo": -25,
}

FILES_FREE = 2
FILE_BOOST = 5
CRITERIA_FREE = 2
CRITERION_BOOST = 3

# Upper bound of each tier, inclusive
TIER_THRESHOLDS: list[tuple[int, Tier]] = [
    (20, Tier.FREE),
    (40, Tier.CHEAP),
    (65, Tier.MID),
]


@dataclass
class TaskScore:
    score: int
    tier: Tier
    suggested_model: str
    breakdown: ScoreBreakdown


def tier_for_score(score: int) -> Tier:
    for upper, tier in TIER_THRESHOLDS:
        if score <= upper:
            return tier
    return Tier.PREMIUM


def score_task(task: Task) -> TaskScore:
    base = COMPLEXITY_BASE[task.complexity]
    files_boost = max(0, len(task.files_affected) - FILES_FREE) * FILE_BOOST
    criteria_boost = max(0, len(task.acceptance_criteria) - CRITERIA_FREE) * CRITERION_BOOST
    tags_boost = sum(TAG_BOOSTS.get(tag, 0)
                     for tag in {t.strip().lower() for t in task.tags})

    score = max(0, min(100, base + files_boost + criteria_boost + tags_boost))
    tier = tier_for_score(score)
    return TaskScore(
        score=score,
        tier=tier,
        suggested_model=default_model_for_tier(tier),
        breakdown=ScoreBreakdown(
            base=base,
            files_boost=files_boost,
            criteria_boost=criteria_boost,
            tags_boost=tags_boost,
        ),
    )
