"""
Tests for Settings.from_env.
"""
from __future__ import annotations

from pathlib import Path

import pytest

from prd_orchestrator.config import DEFAULT_BACKEND_CMD, Settings


def test_defaults_from_empty_env():
    s = Settings.from_env({})
    assert s.max_agents == 5
    assert s.backend_command == DEFAULT_BACKEND_CMD
    assert s.backend_timeout == 600.0
    assert s.start_timeout == 10.0
    assert s.tracing_enabled is False
    assert s.otlp_endpoint is None
    assert s.db_path.name == "state.db"


def test_values_read_from_mapping(tmp_path):
    s = Settings.from_env({
        "PRD_ORCHESTRATOR_DB": str(tmp_path / "x.db"),
        "PRD_ORCHESTRATOR_LOG_DIR": str(tmp_path / "logs"),
        "PRD_ORCHESTRATOR_MAX_AGENTS": "3",
        "PRD_ORCHESTRATOR_BACKEND_CMD": "cat",
        "PRD_ORCHESTRATOR_TIMEOUT": "12.5",
        "PRD_ORCHESTRATOR_START_TIMEOUT": "2",
        "PRD_ORCHESTRATOR_TRACING": "yes",
        "OTEL_EXPORTER_OTLP_ENDPOINT": "http://collector:4317",
    })
    assert s.db_path == tmp_path / "x.db"
    assert s.log_dir == tmp_path / "logs"
    assert s.max_agents == 3
    assert s.backend_command == "cat"
    assert s.backend_timeout == 12.5
    assert s.start_timeout == 2.0
    assert s.tracing_enabled is True
    assert s.otlp_endpoint == "http://collector:4317"


def test_home_is_expanded():
    s = Settings.from_env({"PRD_ORCHESTRATOR_DB": "~/o.db"})
    assert s.db_path == Path.home() / "o.db"


def test_max_agents_floor_is_one():
    assert Settings.from_env({"PRD_ORCHESTRATOR_MAX_AGENTS": "0"}).max_agents == 1


@pytest.mark.parametrize("key, value, message", [
    ("PRD_ORCHESTRATOR_MAX_AGENTS", "many", "must be an integer"),
    ("PRD_ORCHESTRATOR_TIMEOUT", "soon", "must be a number"),
    ("PRD_ORCHESTRATOR_START_TIMEOUT", "x", "must be a number"),
])
def test_invalid_numbers_raise(key, value, message):
    with pytest.raises(ValueError, match=message):
        Settings.from_env({key: value})

