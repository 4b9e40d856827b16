"""
Tests for detached background sessions and how the control plane sees them.

Real child processes (`sleep`, `true`) stand in for background runs.
"""
from __future__ import annotations

import os
import subprocess
import sys

import pytest

from prd_orchestrator import supervisor
from prd_orchestrator.config import Settings
from prd_orchestrator.control_plane import ControlPlane, StartOptions
from prd_orchestrator.cli import build_parser
from prd_orchestrator.models import PRD, ModelPreference, RunConfig, Task, Tier
from prd_orchestrator.sessions import SessionStore
from prd_orchestrator.storage import Database


def _dead_pid() -> int:
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


@pytest.fixture
def sleeper():
    proc = subprocess.Popen(["sleep", "30"])
    yield proc
    proc.kill()
    proc.wait()


def _prd() -> PRD:
    return PRD(project="proj", title="P", tasks=(Task(id="a", title="A"),),
               config=RunConfig(max_attempts=1))


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def test_background_session_id_format():
    sid = supervisor.new_background_session_id()
    prefix, millis, suffix = sid.split("-")
    assert prefix == "bg"
    assert millis.isdigit()
    assert len(suffix) == 8


def test_build_command_runs_module(tmp_path):
    settings = Settings(db_path=tmp_path / "s.db")
    cmd = supervisor.build_command("shop", "/x/prd.yaml", "bg-1-abc", settings)
    assert cmd[:3] == [sys.executable, "-m", "prd_orchestrator"]
    assert cmd[cmd.index("--db") + 1] == str(tmp_path / "s.db")
    assert cmd[cmd.index("run") + 1] == "/x/prd.yaml"
    assert cmd[cmd.index("--session-id") + 1] == "bg-1-abc"
    for flag in ("--model", "--min-tier", "--no-cascade", "--no-adaptive"):
        assert flag not in cmd


def test_build_command_forwards_routing_flags(tmp_path):
    settings = Settings(db_path=tmp_path / "s.db")
    cmd = supervisor.build_command(
        "shop", "/x/prd.yaml", "bg-1-abc", settings,
        preference=ModelPreference(model="opus", min_tier=Tier.MID, no_cascade=True),
        adaptive_routing=False,
    )
    assert cmd[cmd.index("--model") + 1] == "opus"
    assert cmd[cmd.index("--min-tier") + 1] == "mid"
    assert "--no-cascade" in cmd
    assert "--no-adaptive" in cmd
    # the child's own parser accepts the forwarded argv
    args = build_parser().parse_args(cmd[3:])
    assert (args.model, args.min_tier, args.no_cascade, args.no_adaptive) == (
        "opus", "mid", True, True)


def test_is_alive(sleeper):
    assert supervisor.is_alive(os.getpid())
    assert supervisor.is_alive(sleeper.pid)
    assert not supervisor.is_alive(_dead_pid())


def test_tail_log(tmp_path):
    log = tmp_path / "run.log"
    log.write_text("".join(f"line {i}\n" for i in range(50)), encoding="utf-8")
    assert supervisor.tail_log(log, lines=3) == ["line 47", "line 48", "line 49"]
    assert supervisor.tail_log(tmp_path / "missing.log") == []


@pytest.mark.asyncio
async def test_wait_for_session_returns_row_or_none(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        store = SessionStore(db, "proj")
        assert await supervisor.wait_for_session(store, "nope", timeout=0.05,
                                                 poll_interval=0.01) is None
        session = await store.create_session(total_tasks=1, session_id="bg-1-x")
        found = await supervisor.wait_for_session(store, "bg-1-x", timeout=0.05)
        assert found.id == session.id
    finally:
        await db.close()


def test_start_background_spawns_detached_process(tmp_path, monkeypatch):
    spawned = {}

    class FakePopen:
        def __init__(self, command, **kwargs):
            spawned["command"] = command
            spawned.update(kwargs)
            self.pid = 4242

    monkeypatch.setattr(supervisor.subprocess, "Popen", FakePopen)
    settings = Settings(db_path=tmp_path / "s.db", log_dir=tmp_path / "logs")
    handle = supervisor.start_background("shop", tmp_path / "prd.yaml", settings, cwd=tmp_path)

    assert handle.pid == 4242
    assert handle.log_file == tmp_path / "logs" / f"{handle.session_id}.log"
    assert handle.log_file.exists()
    assert spawned["start_new_session"] is True
    assert spawned["cwd"] == str(tmp_path)
    assert handle.session_id in spawned["command"]


# ─────────────────────────────────────────────────────────────────────────────
# Control plane view of background runs
# ─────────────────────────────────────────────────────────────────────────────

def _plane(db, tmp_path, **settings) -> ControlPlane:
    return ControlPlane(db, backend_factory=lambda prd: None,
                        settings=Settings(log_dir=tmp_path / "logs", **settings))


@pytest.mark.asyncio
async def test_status_sees_live_background_process(tmp_path, sleeper):
    db = Database(tmp_path / "state.db")
    try:
        await SessionStore(db, "proj").create_session(total_tasks=2,
                                                      config={"pid": sleeper.pid})
        cp = _plane(db, tmp_path)
        status = await cp.get_status("proj")
        assert status.has_active_session
        assert status.orchestrator_running

        result = await cp.pause("proj")
        assert result.error == (f"Session is running in background process {sleeper.pid}; "
                                "only cancel reaches it.")
        cancelled = await cp.cancel("proj")
        assert cancelled.success
        assert cancelled.pid == sleeper.pid
        assert cancelled.message.startswith(f"Session cancelled; background process {sleeper.pid}")
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_dead_background_process_is_an_orphan(tmp_path):
    db = Database(tmp_path / "state.db")
    try:
        await SessionStore(db, "proj").create_session(total_tasks=2,
                                                      config={"pid": _dead_pid()})
        cp = _plane(db, tmp_path)
        assert not (await cp.get_status("proj")).orchestrator_running
        assert (await cp.resume("proj")).error.startswith(
            "Session exists but orchestrator not running.")
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_background_start_reports_early_exit(tmp_path, monkeypatch):
    db = Database(tmp_path / "state.db")
    try:
        log = tmp_path / "bg.log"
        log.write_text("Traceback...\nRuntimeError: no backend\n", encoding="utf-8")
        handle = supervisor.BackgroundHandle("bg-1-dead", _dead_pid(), log, [])
        monkeypatch.setattr(supervisor, "start_background", lambda *a, **kw: handle)

        cp = _plane(db, tmp_path, start_timeout=0.05)
        result = await cp.start("proj", _prd(),
                                StartOptions(prd_path=str(tmp_path / "prd.yaml"), background=True))
        assert not result.success
        assert result.error == "Background process exited before creating its session."
        assert result.errors[-1] == "RuntimeError: no backend"
        assert result.log_file == str(log)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_background_start_returns_handle_while_child_runs(tmp_path, monkeypatch, sleeper):
    db = Database(tmp_path / "state.db")
    try:
        handle = supervisor.BackgroundHandle("bg-1-live", sleeper.pid, tmp_path / "bg.log", [])
        monkeypatch.setattr(supervisor, "start_background", lambda *a, **kw: handle)

        cp = _plane(db, tmp_path, start_timeout=0.05)
        result = await cp.start("proj", _prd(),
                                StartOptions(prd_path=str(tmp_path / "prd.yaml"), background=True))
        assert result.success
        assert result.session_id == "bg-1-live"
        assert result.pid == sleeper.pid
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_background_start_forwards_routing_options(tmp_path, monkeypatch, sleeper):
    db = Database(tmp_path / "state.db")
    try:
        captured = {}

        def fake_start(project, prd_path, settings, **kwargs):
            captured.update(kwargs)
            return supervisor.BackgroundHandle("bg-1-opts", sleeper.pid, tmp_path / "bg.log", [])

        monkeypatch.setattr(supervisor, "start_background", fake_start)
        cp = _plane(db, tmp_path, start_timeout=0.05)
        result = await cp.start("proj", _prd(), StartOptions(
            prd_path=str(tmp_path / "prd.yaml"), background=True,
            preference=ModelPreference(model="opus", no_cascade=True),
            adaptive_routing=False,
        ))
        assert result.success
        assert captured["preference"].model == "opus"
        assert captured["preference"].no_cascade
        assert captured["adaptive_routing"] is False
    finally:
        await db.close()
