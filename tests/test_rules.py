"""Tests for the scoring rules engine."""
from __future__ import annotations

import pytest

from prd_orchestrator.models import AcceptanceCriterion, Complexity, Task, Tier
from prd_orchestrator.rules import score_task, tier_for_score


def _task(complexity=Complexity.MODERATE, tags=(), files=1, criteria=1) -> Task:
    return Task(
        id="t",
        title="T",
        complexity=complexity,
        tags=tuple(tags),
        files_affected=tuple(f"f{i}.py" for i in range(files)),
        acceptance_criteria=tuple(AcceptanceCriterion(f"c{i}") for i in range(criteria)),
    )


def test_trivial_task_is_free():
    result = score_task(_task(Complexity.TRIVIAL))
    assert result.score == 10
    assert result.tier == Tier.FREE
    assert result.suggested_model == "vibe-opus"


def test_complex_architecture_security_clamps_to_premium():
    result = score_task(_task(Complexity.COMPLEX, tags=["architecture", "security"]))
    assert result.score == 100
    assert result.tier == Tier.PREMIUM
    assert result.suggested_model == "opus"
    assert result.breakdown.base == 75
    assert result.breakdown.tags_boost == 35


def test_files_and_criteria_beyond_two_add_points():
    result = score_task(_task(Complexity.SIMPLE, files=5, criteria=4))
    assert result.breakdown.files_boost == 15
    assert result.breakdown.criteria_boost == 6
    assert result.score == 25 + 15 + 6
    assert result.tier == Tier.MID


def test_negative_tags_clamp_at_zero():
    result = score_task(_task(Complexity.TRIVIAL, tags=["typo", "lint"]))
    assert result.score == 0
    assert result.tier == Tier.FREE


def test_unknown_tags_contribute_nothing():
    assert score_task(_task(tags=["frobnicate"])).score == 50


def test_repeated_tag_counts_once():
    assert score_task(_task(tags=["API", "api"])).breakdown.tags_boost == 5


@pytest.mark.parametrize("score,tier", [
    (0, Tier.FREE), (20, Tier.FREE), (21, Tier.CHEAP), (40, Tier.CHEAP),
    (41, Tier.MID), (65, Tier.MID), (66, Tier.PREMIUM), (100, Tier.PREMIUM),
])
def test_tier_thresholds(score, tier):
    assert tier_for_score(score) == tier
