"""
Detached background sessions
============================
A background run is a separate `python -m prd_orchestrator run` process in
its own session group, so it outlives the shell that started it. Its
stdout/stderr go to `<log_dir>/<session_id>.log`.

The child writes to the same SQLite database as an in-process run, so
ControlPlane.get_status() reports it the same way. The parent picks the
session id up front so it can hand it back before the child has written
anything. The child polls its session row at task boundaries, which is how
`cancel` from another process reaches it.
"""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import time
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import Settings
from .models import ModelPreference, Session
from .sessions import SessionStore

logger = logging.getLogger("prd_orchestrator.supervisor")


@dataclass
class BackgroundHandle:
    session_id: str
    pid: int
    log_file: Path
    command: list[str]


def new_background_session_id() -> str:
    return f"bg-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def build_command(project: str, prd_path: str | Path, session_id: str,
                  settings: Settings,
                  preference: Optional[ModelPreference] = None,
                  adaptive_routing: bool = True) -> list[str]:
    """Child argv; routing flags mirror the `run` subcommand's."""
    command = [
        sys.executable, "-m", "prd_orchestrator",
        "--db", str(settings.db_path),
        "run", str(prd_path),
        "--project", project,
        "--session-id", session_id,
    ]
    if preference is not None:
        if preference.model:
            command += ["--model", preference.model]
        if preference.min_tier is not None:
            command += ["--min-tier", preference.min_tier.value]
        if preference.no_cascade:
            command.append("--no-cascade")
    if not adaptive_routing:
        command.append("--no-adaptive")
    return command


def start_background(project: str, prd_path: str | Path, settings: Settings,
                     cwd: Optional[str | Path] = None,
                     preference: Optional[ModelPreference] = None,
                     adaptive_routing: bool = True) -> BackgroundHandle:
    """Spawn a detached run and return immediately."""
    session_id = new_background_session_id()
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / f"{session_id}.log"
    command = build_command(project, Path(prd_path).resolve(), session_id, settings,
                            preference=preference, adaptive_routing=adaptive_routing)

    with open(log_file, "ab") as log:
        proc = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            cwd=str(cwd) if cwd else None,
            start_new_session=True,
        )
    logger.info("Background session %s started (pid %d), log: %s",
                session_id, proc.pid, log_file)
    return BackgroundHandle(session_id=session_id, pid=proc.pid,
                            log_file=log_file, command=command)


def is_alive(pid: int) -> bool:
    """Probe a process; an exited child of this process is reaped first."""
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def tail_log(log_file: str | Path, lines: int = 20) -> list[str]:
    path = Path(log_file)
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        return [line.rstrip("\n") for line in deque(fh, maxlen=lines)]


async def wait_for_session(store: SessionStore, session_id: str,
                           timeout: float = 10.0,
                           poll_interval: float = 0.2) -> Optional[Session]:
    """Poll until the child has created its session row, or give up."""
    deadline = time.monotonic() + timeout
    while True:
        session = await store.get_session(session_id)
        if session is not None or time.monotonic() >= deadline:
            return session
        await asyncio.sleep(poll_interval)
