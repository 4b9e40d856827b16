"""
Runtime settings read from the environment
==========================================
`.env` files are loaded with python-dotenv before the environment is read,
so values there win over empty shell variables.

    PRD_ORCHESTRATOR_DB             SQLite path (default ~/.prd_orchestrator/state.db)
    PRD_ORCHESTRATOR_LOG_DIR        background session logs
    PRD_ORCHESTRATOR_MAX_AGENTS     cap on concurrent tasks in multi-agent mode
    PRD_ORCHESTRATOR_BACKEND_CMD    command template for CommandBackend
    PRD_ORCHESTRATOR_TIMEOUT        per-attempt backend timeout, seconds
    PRD_ORCHESTRATOR_START_TIMEOUT  seconds to wait for a background run's session row
    PRD_ORCHESTRATOR_TRACING        "1" enables OpenTelemetry spans
    OTEL_EXPORTER_OTLP_ENDPOINT     OTLP collector; console exporter when unset
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_HOME = Path.home() / ".prd_orchestrator"
DEFAULT_BACKEND_CMD = "claude -p --model {model}"


@dataclass
class Settings:
    db_path: Path = DEFAULT_HOME / "state.db"
    log_dir: Path = DEFAULT_HOME / "logs"
    max_agents: int = 5
    backend_command: str = DEFAULT_BACKEND_CMD
    backend_timeout: float = 600.0
    start_timeout: float = 10.0
    tracing_enabled: bool = False
    otlp_endpoint: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None,
                 load_dotenv_file: bool = True) -> "Settings":
        if env is None:
            if load_dotenv_file:
                load_dotenv(override=True)
            env = os.environ

        def _int(key: str, default: int) -> int:
            raw = env.get(key)
            if not raw:
                return default
            try:
                return max(1, int(raw))
            except ValueError:
                raise ValueError(f"{key} must be an integer, got {raw!r}") from None

        def _float(key: str, default: float) -> float:
            raw = env.get(key)
            if not raw:
                return default
            try:
                return float(raw)
            except ValueError:
                raise ValueError(f"{key} must be a number, got {raw!r}") from None

        return cls(
            db_path=Path(env.get("PRD_ORCHESTRATOR_DB") or cls.db_path).expanduser(),
            log_dir=Path(env.get("PRD_ORCHESTRATOR_LOG_DIR") or cls.log_dir).expanduser(),
            max_agents=_int("PRD_ORCHESTRATOR_MAX_AGENTS", cls.max_agents),
            backend_command=env.get("PRD_ORCHESTRATOR_BACKEND_CMD") or cls.backend_command,
            backend_timeout=_float("PRD_ORCHESTRATOR_TIMEOUT", cls.backend_timeout),
            start_timeout=_float("PRD_ORCHESTRATOR_START_TIMEOUT", cls.start_timeout),
            tracing_enabled=env.get("PRD_ORCHESTRATOR_TRACING", "").lower() in ("1", "true", "yes"),
            otlp_endpoint=env.get("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        )
