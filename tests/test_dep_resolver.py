"""
Tests for DependencyResolver — validation and deterministic ordering.
"""
from __future__ import annotations

import pytest

from prd_orchestrator.dep_resolver import DependencyResolver, PRDValidationError
from prd_orchestrator.models import Task


def _t(tid: str, *deps: str) -> Task:
    return Task(id=tid, title=tid.upper(), dependencies=tuple(deps))


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

def test_valid_list_has_no_errors():
    report = DependencyResolver().validate([_t("a"), _t("b", "a")])
    assert report.valid
    assert report.errors == []


def test_two_task_cycle_reports_exact_path():
    report = DependencyResolver().validate([_t("A", "B"), _t("B", "A")])
    assert not report.valid
    assert report.cycles == [["A", "B", "A"]]
    assert "Circular dependency detected: A -> B -> A" in report.errors


def test_self_dependency_is_a_cycle():
    report = DependencyResolver().validate([_t("a", "a")])
    assert report.cycles == [["a", "a"]]


def test_three_node_cycle_reported_once():
    tasks = [_t("a", "c"), _t("b", "a"), _t("c", "b")]
    cycles = DependencyResolver().find_cycles(tasks)
    assert len(cycles) == 1
    assert cycles[0][0] == cycles[0][-1]
    assert set(cycles[0]) == {"a", "b", "c"}


def test_duplicate_ids_listed_once():
    report = DependencyResolver().validate([_t("t1"), _t("t1"), _t("t2")])
    assert report.duplicates == ["t1"]
    assert report.errors[0] == "Duplicate task IDs found: t1"


def test_every_missing_dependency_reported():
    report = DependencyResolver().validate([_t("a", "x"), _t("b", "y", "a")])
    assert report.missing == [("a", "x"), ("b", "y")]
    assert 'Task "a" depends on non-existent task "x"' in report.errors
    assert 'Task "b" depends on non-existent task "y"' in report.errors


def test_all_checks_accumulate():
    """Duplicates, missing deps and cycles all show up in one report."""
    tasks = [_t("a", "b"), _t("b", "a"), _t("c", "ghost"), _t("c")]
    report = DependencyResolver().validate(tasks)
    assert report.duplicates == ["c"]
    assert report.missing == [("c", "ghost")]
    assert report.cycles == [["a", "b", "a"]]
    assert len(report.errors) == 3


def test_resolve_raises_with_all_errors():
    with pytest.raises(PRDValidationError) as exc_info:
        DependencyResolver().resolve([_t("a", "missing"), _t("a")])
    assert len(exc_info.value.errors) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Ordering
# ─────────────────────────────────────────────────────────────────────────────

def test_order_places_dependencies_first():
    tasks = [_t("deploy", "build", "test"), _t("test", "build"), _t("build"),
             _t("docs"), _t("release", "deploy", "docs")]
    order = DependencyResolver().resolve(tasks)
    assert sorted(order) == sorted(t.id for t in tasks)
    pos = {tid: i for i, tid in enumerate(order)}
    for t in tasks:
        for dep in t.dependencies:
            assert pos[dep] < pos[t.id], f"{dep} must run before {t.id}"


def test_ties_break_by_list_order():
    tasks = [_t("z"), _t("m"), _t("a"), _t("b", "z")]
    assert DependencyResolver().resolve(tasks) == ["z", "m", "a", "b"]


def test_order_is_deterministic():
    tasks = [_t("c", "a"), _t("a"), _t("b"), _t("d", "b", "c")]
    r = DependencyResolver()
    # c unblocks after a and sits earlier in the list than b
    assert r.resolve(tasks) == r.resolve(tasks) == ["a", "c", "b", "d"]


def test_levels_group_independent_tasks():
    tasks = [_t("a"), _t("b"), _t("c", "a"), _t("d", "a", "b"), _t("e", "d")]
    assert DependencyResolver().levels(tasks) == [["a", "b"], ["c", "d"], ["e"]]
