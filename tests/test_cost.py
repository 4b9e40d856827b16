"""Tests for the cost estimator."""
from __future__ import annotations

import pytest

from prd_orchestrator.cost import CostEstimator, estimate_tokens
from prd_orchestrator.history import HistoryStore
from prd_orchestrator.models import PRD, Complexity, ModelPreference, Task, Tier
from prd_orchestrator.registry import estimate_cost
from prd_orchestrator.router import ModelRouter
from prd_orchestrator.signature import signature_for_task
from prd_orchestrator.storage import Database


def _task(tid="t", complexity=Complexity.MODERATE, files=0, tags=()) -> Task:
    return Task(id=tid, title=tid, complexity=complexity, tags=tuple(tags),
                files_affected=tuple(f"f{i}.py" for i in range(files)))


def _estimator(db: Database) -> CostEstimator:
    history = HistoryStore(db, "proj")
    return CostEstimator(ModelRouter(history), history)


def test_token_estimate_scales_with_complexity_and_files():
    base = estimate_tokens(_task())
    assert (base.input, base.output) == (4000, 2000)
    trivial = estimate_tokens(_task(complexity=Complexity.TRIVIAL))
    assert trivial.total == 3000
    epic = estimate_tokens(_task(complexity=Complexity.EPIC, files=5))
    assert epic.input == round(4000 * 2.5 * 1.5)


@pytest.mark.asyncio
async def test_default_escalation_probability_by_tier(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        est = await _estimator(db).estimate_task(_task(complexity=Complexity.SIMPLE))
        assert est.estimated_model == "flash"
        assert est.escalation_probability == 0.2
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_expected_blends_routed_and_premium(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        task = _task(complexity=Complexity.MODERATE)   # mid tier, p = 0.1
        est = await _estimator(db).estimate_task(task)
        tokens = estimate_tokens(task)
        base = estimate_cost("pro", tokens.input, tokens.output)
        premium = estimate_cost("opus", tokens.input, tokens.output)
        assert est.optimistic_usd == 0.0
        assert est.pessimistic_usd == pytest.approx(premium)
        assert est.expected_usd == pytest.approx(base * 0.9 + premium * 0.1)
        assert set(est.per_model_usd) >= {"pro", "sonnet", "opus"}
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_history_drives_escalation_probability(tmp_path):
    db = Database(tmp_path / "state.db")
    history = HistoryStore(db, "proj")
    try:
        task = _task(complexity=Complexity.SIMPLE)
        sig = signature_for_task(task).hash
        for _ in range(3):
            await history.record(sig, "flash", True, 0.0)
        await history.record(sig, "pro", True, 0.0)
        est = await CostEstimator(ModelRouter(history), history).estimate_task(task)
        assert est.estimated_model == "flash"
        assert est.escalation_probability == pytest.approx(0.25)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_scenarios_are_ordered_for_every_tier(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        estimator = _estimator(db)
        for cx in Complexity:
            est = await estimator.estimate_task(_task(complexity=cx, files=3))
            assert est.optimistic_usd <= est.expected_usd <= est.pessimistic_usd, cx
        for tier in Tier:
            decision = await estimator._router.route(_task(), ModelPreference(min_tier=tier))
            est = await estimator.estimate_task(_task(), decision)
            assert est.optimistic_usd <= est.expected_usd <= est.pessimistic_usd, tier
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_prd_estimate_sums_tasks(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        prd = PRD(project="proj", title="P", tasks=(
            _task("a", Complexity.TRIVIAL),
            _task("b", Complexity.COMPLEX, tags=["security"]),
            _task("c", Complexity.SIMPLE, files=4),
        ))
        report = await _estimator(db).estimate_prd(prd)
        assert [t.task_id for t in report.tasks] == ["a", "b", "c"]
        assert report.expected_usd == pytest.approx(sum(t.expected_usd for t in report.tasks))
        assert report.total_tokens == sum(t.tokens.total for t in report.tasks)
        assert report.optimistic_usd <= report.expected_usd <= report.pessimistic_usd
        assert report.will_exceed_budget(0.0)
        assert not report.will_exceed_budget(1000.0)
    finally:
        await db.close()
