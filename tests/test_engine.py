"""
Tests for Orchestrator — the session state machine.

The backend is a fake that reads the task id from the first prompt line, so
each test can script per-task outcomes without touching a real model CLI.
"""
from __future__ import annotations

import asyncio
import re

import pytest

from prd_orchestrator.engine import InvalidTransitionError, Orchestrator, RunOptions
from prd_orchestrator.dep_resolver import PRDValidationError
from prd_orchestrator.hooks import EventType, HookRegistry
from prd_orchestrator.models import (
    PRD, BackendResult, Complexity, ErrorCategory, ExecutionMode,
    ModelPreference, RunConfig, SessionStatus, Task,
)
from prd_orchestrator.sessions import SessionStore
from prd_orchestrator.storage import Database

_TASK_LINE = re.compile(r"^# Task (\S+):")


class FakeBackend:
    """
    fail     — task ids that always fail with a capability error
    hold     — when set, every call waits for release before returning
    """

    def __init__(self, fail=(), hold=False, delay=0.0):
        self.fail = set(fail)
        self.calls: list[tuple[str, str]] = []
        self.prompts: dict[str, str] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.delay = delay
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        if not hold:
            self.release.set()

    async def run(self, model: str, prompt: str) -> BackendResult:
        task_id = _TASK_LINE.match(prompt).group(1)
        self.calls.append((task_id, model))
        self.prompts[task_id] = prompt
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started.set()
        try:
            await self.release.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if task_id in self.fail:
            return BackendResult(success=False, tokens_in=10, cost_usd=0.001,
                                 error_category=ErrorCategory.CAPABILITY,
                                 error_message="task too complex for model")
        return BackendResult(success=True, tokens_in=100, tokens_out=50, cost_usd=0.01)

    def tasks_called(self) -> list[str]:
        out: list[str] = []
        for tid, _ in self.calls:
            if tid not in out:
                out.append(tid)
        return out


def _prd(*tasks: Task, continue_on_failure=False, max_attempts=1,
         default_model="sonnet") -> PRD:
    return PRD(project="proj", title="Test PRD", tasks=tuple(tasks),
               config=RunConfig(max_attempts=max_attempts,
                                continue_on_failure=continue_on_failure,
                                default_model=default_model))


def _t(tid: str, *deps: str, complexity=Complexity.SIMPLE) -> Task:
    return Task(id=tid, title=f"Task {tid}", dependencies=tuple(deps), complexity=complexity)


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sequential_run_completes_in_dependency_order(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend()
        orch = Orchestrator("proj", db, backend)
        assert orch.status is None
        session = await orch.run(_prd(_t("c", "b"), _t("a"), _t("b", "a")))

        assert session.status == SessionStatus.COMPLETED
        assert backend.tasks_called() == ["a", "b", "c"]
        assert orch.execution_order == ["a", "b", "c"]
        assert session.completed_tasks == 3
        assert session.total_tokens == 3 * 150
        assert session.total_cost_usd == pytest.approx(0.03)
        assert session.ended_at

        stored = await SessionStore(db, "proj").get_session(session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert stored.completed_tasks == 3
        assert stored.current_task_id is None
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_every_attempt_is_persisted(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(fail={"a"})
        orch = Orchestrator("proj", db, backend)
        session = await orch.run(_prd(_t("a"), max_attempts=2))

        attempts = await SessionStore(db, "proj").attempts_for(session.id, "a")
        # capability failures escalate immediately along flash's path
        assert [a.attempt_number for a in attempts] == list(range(1, len(attempts) + 1))
        assert attempts[0].model == "flash"
        assert attempts[0].escalated_from is None
        assert attempts[1].escalated_from == "flash"
        assert all(not a.success for a in attempts)
        assert attempts[0].error_category == ErrorCategory.CAPABILITY
        assert attempts[-1].model == "thinking"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_history_updated_per_attempt(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        orch = Orchestrator("proj", db, FakeBackend())
        await orch.run(_prd(_t("a")))
        patterns = await orch.history.all_patterns()
        assert [(p.model, p.success_count) for p in patterns] == [("flash", 1)]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_adaptive_routing_off_uses_default_model(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend()
        orch = Orchestrator("proj", db, backend, options=RunOptions(adaptive_routing=False))
        await orch.run(_prd(_t("a"), _t("b"), default_model="haiku"))
        assert {m for _, m in backend.calls} == {"haiku"}
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_call_preference_applies_to_every_task(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend()
        orch = Orchestrator("proj", db, backend,
                            options=RunOptions(preference=ModelPreference(model="gpt-4o")))
        await orch.run(_prd(_t("a"), _t("b")))
        assert {m for _, m in backend.calls} == {"gpt-4o"}
    finally:
        await db.close()


# ─────────────────────────────────────────────────────────────────────────────
# Failure handling
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failure_aborts_session_by_default(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(fail={"a"})
        orch = Orchestrator("proj", db, backend,
                            options=RunOptions(preference=ModelPreference(no_cascade=True)))
        session = await orch.run(_prd(_t("a"), _t("b")))
        assert session.status == SessionStatus.FAILED
        assert backend.tasks_called() == ["a"]
        assert session.failed_tasks == 1
        assert session.completed_tasks == 0
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_continue_on_failure_skips_only_dependents(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        skipped = []
        hooks = HookRegistry()
        hooks.add(EventType.TASK_SKIPPED, lambda task_id, **_: skipped.append(task_id))
        backend = FakeBackend(fail={"a"})
        orch = Orchestrator("proj", db, backend, hooks=hooks,
                            options=RunOptions(preference=ModelPreference(no_cascade=True)))
        session = await orch.run(_prd(
            _t("a"), _t("b", "a"), _t("c", "b"), _t("d"),
            continue_on_failure=True,
        ))
        assert session.status == SessionStatus.COMPLETED
        assert backend.tasks_called() == ["a", "d"]
        assert skipped == ["b", "c"]
        assert (session.completed_tasks, session.failed_tasks, session.skipped_tasks) == (1, 1, 2)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_failure_leaves_guardrail_used_by_later_prompts(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(fail={"a"})
        orch = Orchestrator("proj", db, backend,
                            options=RunOptions(preference=ModelPreference(no_cascade=True)))
        # b shares a's signature (same complexity, tags and file count)
        await orch.run(_prd(_t("a"), _t("b"), continue_on_failure=True))

        [g] = await orch.sessions.guardrails()
        assert g.related_tasks == ["a"]
        assert "Lessons from previous attempts" in backend.prompts["b"]
        assert g.problem in backend.prompts["b"]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_invalid_prd_creates_no_session(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        orch = Orchestrator("proj", db, FakeBackend())
        with pytest.raises(PRDValidationError):
            await orch.start(_prd(_t("a", "b"), _t("b", "a")))
        assert orch.status is None
        assert await orch.sessions.list_sessions() == []
    finally:
        await db.close()


# ─────────────────────────────────────────────────────────────────────────────
# Control
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pause_takes_effect_at_task_boundary_and_resume_continues(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        events = []
        hooks = HookRegistry()
        hooks.add(EventType.SESSION_PAUSED, lambda **_: events.append("paused"))
        hooks.add(EventType.SESSION_RESUMED, lambda **_: events.append("resumed"))
        backend = FakeBackend(hold=True)
        orch = Orchestrator("proj", db, backend, hooks=hooks)
        await orch.start(_prd(_t("a"), _t("b"), _t("c")))
        await backend.started.wait()

        orch.pause()
        assert orch.status == SessionStatus.RUNNING     # in-flight task still running
        backend.release.set()
        session = await orch.wait()
        assert session.status == SessionStatus.PAUSED
        assert backend.tasks_called() == ["a"]
        assert (await orch.sessions.get_active_session()).status == SessionStatus.PAUSED

        await orch.resume()
        session = await orch.wait()
        assert session.status == SessionStatus.COMPLETED
        assert backend.tasks_called() == ["a", "b", "c"]
        assert session.completed_tasks == 3
        assert events == ["paused", "resumed"]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_cancel_stops_dispatch_but_records_in_flight_attempt(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(hold=True)
        orch = Orchestrator("proj", db, backend)
        session = await orch.start(_prd(_t("a"), _t("b")))
        await backend.started.wait()

        await orch.cancel()
        assert orch.status == SessionStatus.CANCELLED
        backend.release.set()
        await orch.wait()

        assert backend.tasks_called() == ["a"]
        stored = await orch.sessions.get_session(session.id)
        assert stored.status == SessionStatus.CANCELLED
        assert stored.ended_at
        assert len(await orch.sessions.attempts_for(session.id)) == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_invalid_transitions_raise(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        orch = Orchestrator("proj", db, FakeBackend())
        with pytest.raises(InvalidTransitionError, match="Session is idle, cannot pause."):
            orch.pause()
        with pytest.raises(InvalidTransitionError, match="cannot resume"):
            await orch.resume()
        with pytest.raises(InvalidTransitionError, match="cannot cancel"):
            await orch.cancel()

        await orch.run(_prd(_t("a")))
        with pytest.raises(InvalidTransitionError, match="Session is completed, cannot pause."):
            orch.pause()
        with pytest.raises(InvalidTransitionError):
            await orch.start(_prd(_t("a")))
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_resume_requires_paused(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(hold=True)
        orch = Orchestrator("proj", db, backend)
        await orch.start(_prd(_t("a")))
        with pytest.raises(InvalidTransitionError, match="Session is running, cannot resume."):
            await orch.resume()
        backend.release.set()
        await orch.wait()
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_second_session_for_project_is_rejected(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(hold=True)
        first = Orchestrator("proj", db, backend)
        session = await first.start(_prd(_t("a")))

        second = Orchestrator("proj", db, FakeBackend())
        with pytest.raises(InvalidTransitionError, match="Active session already exists"):
            await second.start(_prd(_t("a")))
        assert second.status is None
        assert len(await first.sessions.list_sessions()) == 1

        # other projects are unaffected
        other = await Orchestrator("other", db, FakeBackend()).run(_prd(_t("x")))
        assert other.status == SessionStatus.COMPLETED

        backend.release.set()
        assert (await first.wait()).id == session.id
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_external_cancel_is_picked_up_at_boundary(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(hold=True)
        orch = Orchestrator("proj", db, backend, options=RunOptions(watch_external_cancel=True))
        session = await orch.start(_prd(_t("a"), _t("b")))
        await backend.started.wait()

        # another process cancels through the shared database
        await SessionStore(db, "proj").update_status(session.id, SessionStatus.CANCELLED)
        backend.release.set()
        await orch.wait()

        assert orch.status == SessionStatus.CANCELLED
        assert backend.tasks_called() == ["a"]
    finally:
        await db.close()


# ─────────────────────────────────────────────────────────────────────────────
# Multi-agent mode
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_multi_agent_runs_levels_with_bounded_concurrency(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(delay=0.02)
        orch = Orchestrator("proj", db, backend, options=RunOptions(
            preference=ModelPreference(force_mode=ExecutionMode.MULTI)))
        session = await orch.run(_prd(_t("a"), _t("b"), _t("c"), _t("d", "a", "b")))

        assert orch.plan.mode == ExecutionMode.MULTI
        assert orch.plan.suggested_agents == 2
        assert session.status == SessionStatus.COMPLETED
        assert session.completed_tasks == 4
        assert backend.max_in_flight == 2
        assert backend.tasks_called()[-1] == "d"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_max_agents_caps_concurrency(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        backend = FakeBackend(delay=0.02)
        orch = Orchestrator("proj", db, backend, options=RunOptions(
            max_agents=1, preference=ModelPreference(force_mode=ExecutionMode.MULTI)))
        await orch.run(_prd(_t("a"), _t("b"), _t("c"), _t("d")))
        assert backend.max_in_flight == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_lifecycle_hooks_fire_in_order(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        events = []
        hooks = HookRegistry()
        for ev in (EventType.SESSION_STARTED, EventType.TASK_STARTED,
                   EventType.TASK_COMPLETED, EventType.SESSION_FINISHED):
            hooks.add(ev, lambda _ev=ev, **_: events.append(_ev.value))
        await Orchestrator("proj", db, FakeBackend(), hooks=hooks).run(_prd(_t("a")))
        assert events == ["session_started", "task_started", "task_completed", "session_finished"]
    finally:
        await db.close()
