"""
PRD File Loader — load a PRD from a YAML or JSON file
=====================================================
Keys may be snake_case or camelCase (`acceptance_criteria` or
`acceptanceCriteria`); both map onto the same typed PRD.

Schema reference (fields other than `project` and `tasks` are optional):

    version: "1.0"
    project: "shop"
    title: "Checkout rewrite"
    config:
      max_attempts: 3              # 1..10, default 3
      continue_on_failure: false
      model: sonnet                # default model when adaptive routing is off
      test_command: "pytest -q"
    tasks:
      - id: cart-api
        title: "Cart API"
        description: "CRUD endpoints for the cart"
        complexity: moderate       # trivial | simple | moderate | complex | epic
        priority: high             # critical | high | medium | low
        tags: [api, database]
        files_affected: [app/cart.py]
        dependencies: [db-schema]
        acceptance_criteria:
          - "Endpoints documented"
          - description: "Tests pass"
            test_command: "pytest tests/test_cart.py"
            expected: "passed"
        model_preference:
          min_tier: mid            # free | cheap | mid | premium
          no_cascade: false
          model: opus
          force_mode: single       # single | multi

Every schema violation is collected before anything is raised, then the
dependency checks run; all errors surface together in one
PRDValidationError.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

import jsonschema
import yaml

from .dep_resolver import DependencyResolver, PRDValidationError
from .models import (
    PRD, AcceptanceCriterion, Complexity, ExecutionMode, ModelPreference,
    Priority, RunConfig, Task, Tier,
)
from .registry import is_known_model

logger = logging.getLogger("prd_orchestrator.prd_file")


# ─────────────────────────────────────────────────────────────────────────────
# Schema
# ─────────────────────────────────────────────────────────────────────────────

_STRINGS = {"type": "array", "items": {"type": "string"}}

PRD_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["project", "tasks"],
    "properties": {
        "version": {"type": "string"},
        "project": {"type": "string", "minLength": 1},
        "title": {"type": "string"},
        "description": {"type": "string"},
        "config": {
            "type": "object",
            "properties": {
                "max_attempts": {"type": "integer", "minimum": 1, "maximum": 10},
                "continue_on_failure": {"type": "boolean"},
                "model": {"type": "string", "minLength": 1},
                "default_model": {"type": "string", "minLength": 1},
                "test_command": {"type": "string"},
            },
        },
        "tasks": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["id", "title"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "title": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "complexity": {"enum": [c.value for c in Complexity]},
                    "priority": {"enum": [p.value for p in Priority]},
                    "tags": _STRINGS,
                    "labels": _STRINGS,
                    "files_affected": _STRINGS,
                    "dependencies": _STRINGS,
                    "acceptance_criteria": {
                        "type": "array",
                        "items": {
                            "oneOf": [
                                {"type": "string", "minLength": 1},
                                {
                                    "type": "object",
                                    "required": ["description"],
                                    "properties": {
                                        "id": {"type": "string"},
                                        "description": {"type": "string", "minLength": 1},
                                        "test_command": {"type": "string"},
                                        "expected": {"type": "string"},
                                    },
                                },
                            ],
                        },
                    },
                    "model_preference": {
                        "type": "object",
                        "properties": {
                            "model": {"type": "string", "minLength": 1},
                            "min_tier": {"enum": [t.value for t in Tier]},
                            "no_cascade": {"type": "boolean"},
                            "force_mode": {"enum": [m.value for m in ExecutionMode]},
                        },
                    },
                },
            },
        },
    },
}

_CAMEL = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _snake(key: str) -> str:
    return _CAMEL.sub(r"_\1", key).lower()


def normalize_keys(value: Any) -> Any:
    """Recursively convert dict keys from camelCase to snake_case."""
    if isinstance(value, dict):
        return {_snake(str(k)): normalize_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [normalize_keys(v) for v in value]
    return value


def schema_errors(raw: Any) -> list[str]:
    """Every schema violation as 'path: message', in document order."""
    validator = jsonschema.Draft7Validator(PRD_SCHEMA)
    errors = []
    for err in sorted(validator.iter_errors(raw), key=lambda e: list(map(str, e.absolute_path))):
        path = ".".join(str(p) for p in err.absolute_path)
        errors.append(f"{path}: {err.message}" if path else err.message)
    return errors


# ─────────────────────────────────────────────────────────────────────────────
# Conversion
# ─────────────────────────────────────────────────────────────────────────────

def _criterion(raw: Any) -> AcceptanceCriterion:
    if isinstance(raw, str):
        return AcceptanceCriterion(description=raw)
    return AcceptanceCriterion(
        description=raw["description"],
        test_command=raw.get("test_command"),
        expected=raw.get("expected"),
    )


def _preference(raw: Optional[dict[str, Any]]) -> Optional[ModelPreference]:
    if not raw:
        return None
    return ModelPreference(
        model=raw.get("model"),
        min_tier=Tier(raw["min_tier"]) if raw.get("min_tier") else None,
        no_cascade=bool(raw.get("no_cascade", False)),
        force_mode=ExecutionMode(raw["force_mode"]) if raw.get("force_mode") else None,
    )


def _task(raw: dict[str, Any]) -> Task:
    return Task(
        id=raw["id"],
        title=raw["title"],
        description=raw.get("description", ""),
        acceptance_criteria=tuple(_criterion(c) for c in raw.get("acceptance_criteria") or []),
        dependencies=tuple(raw.get("dependencies") or []),
        complexity=Complexity(raw.get("complexity", Complexity.MODERATE.value)),
        tags=tuple(raw.get("tags") or []),
        files_affected=tuple(raw.get("files_affected") or []),
        priority=Priority(raw.get("priority", Priority.MEDIUM.value)),
        labels=tuple(raw.get("labels") or []),
        model_preference=_preference(raw.get("model_preference")),
    )


def _model_errors(raw: dict[str, Any]) -> list[str]:
    errors = []
    cfg = raw.get("config") or {}
    default = cfg.get("model") or cfg.get("default_model")
    if default and not is_known_model(default):
        errors.append(f"config.model: unknown model '{default}'")
    for i, t in enumerate(raw.get("tasks") or []):
        model = (t.get("model_preference") or {}).get("model")
        if model and not is_known_model(model):
            errors.append(f"tasks.{i}.model_preference.model: unknown model '{model}'")
    return errors


def prd_from_dict(data: dict[str, Any]) -> PRD:
    """
    Validate and convert an already-parsed document.

    Raises
    ------
    PRDValidationError — schema, model-name or dependency errors, all of them
    """
    raw = normalize_keys(data)
    errors = schema_errors(raw)
    if errors:
        raise PRDValidationError(errors)
    errors = _model_errors(raw)
    if errors:
        raise PRDValidationError(errors)

    cfg = raw.get("config") or {}
    prd = PRD(
        project=raw["project"],
        title=raw.get("title") or raw["project"],
        description=raw.get("description", ""),
        version=raw.get("version", "1.0"),
        tasks=tuple(_task(t) for t in raw["tasks"]),
        config=RunConfig(
            max_attempts=cfg.get("max_attempts", 3),
            continue_on_failure=cfg.get("continue_on_failure", False),
            default_model=cfg.get("model") or cfg.get("default_model") or "sonnet",
            test_command=cfg.get("test_command"),
        ),
    )
    validate_prd(prd)
    return prd


def validate_prd(prd: PRD) -> list[str]:
    """
    Dependency checks on a typed PRD; returns the execution order.

    Raises
    ------
    PRDValidationError — duplicate ids, cycles or missing dependencies
    """
    if not prd.tasks:
        raise PRDValidationError(["PRD has no tasks"])
    return DependencyResolver().resolve(prd.tasks)


# ─────────────────────────────────────────────────────────────────────────────
# Loader
# ─────────────────────────────────────────────────────────────────────────────

def load_prd(path: str | Path) -> PRD:
    """
    Parse a PRD file (.yaml / .yml / .json) and return a validated PRD.

    Raises
    ------
    FileNotFoundError  — file doesn't exist
    PRDValidationError — unparsable file or any validation error; messages
                         are prefixed with the file path
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"PRD file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise PRDValidationError([f"'{path}': could not parse file: {exc}"]) from exc

    if not isinstance(data, dict):
        raise PRDValidationError([f"'{path}': top level must be a mapping"])

    try:
        prd = prd_from_dict(data)
    except PRDValidationError as exc:
        raise PRDValidationError([f"'{path}': {e}" for e in exc.errors]) from exc

    logger.debug("Loaded PRD %s from %s: %d tasks", prd.project, path, len(prd.tasks))
    return prd
