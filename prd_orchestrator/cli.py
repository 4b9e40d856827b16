#!/usr/bin/env python3
"""
CLI Entry Point — drive PRD sessions from the terminal
======================================================
Usage:
    python -m prd_orchestrator validate prd.yaml
    python -m prd_orchestrator plan prd.yaml
    python -m prd_orchestrator estimate prd.yaml --budget 5
    python -m prd_orchestrator run prd.yaml
    python -m prd_orchestrator start prd.yaml --background
    python -m prd_orchestrator status --project shop
    python -m prd_orchestrator cancel --project shop
    python -m prd_orchestrator stats --project shop

`.env` is loaded before anything reads the environment.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .backends import CommandBackend, CommandQualityGate
from .config import Settings
from .control_plane import ControlPlane, StartOptions
from .dep_resolver import PRDValidationError
from .engine import InvalidTransitionError, Orchestrator, RunOptions
from .models import PRD, ModelPreference, Tier
from .prd_file import load_prd, validate_prd
from .registry import UnknownModelError, get_model
from .sessions import SessionStore
from .storage import Database
from .tracing import TracingConfig, configure_tracing

logger = logging.getLogger("prd_orchestrator.cli")


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _load(path: str) -> Optional[PRD]:
    try:
        return load_prd(path)
    except FileNotFoundError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
    except PRDValidationError as exc:
        print("PRD validation failed:", file=sys.stderr)
        for err in exc.errors:
            print(f"  - {err}", file=sys.stderr)
    return None


def _preference(args) -> Optional[ModelPreference]:
    model = getattr(args, "model", None)
    min_tier = getattr(args, "min_tier", None)
    no_cascade = getattr(args, "no_cascade", False)
    if not (model or min_tier or no_cascade):
        return None
    if model:
        get_model(model)  # UnknownModelError surfaces before anything runs
    return ModelPreference(
        model=model,
        min_tier=Tier(min_tier) if min_tier else None,
        no_cascade=no_cascade,
    )


def _control_plane(db: Database, settings: Settings) -> ControlPlane:
    cwd = Path.cwd()
    return ControlPlane(
        db,
        backend_factory=lambda prd: CommandBackend(
            settings.backend_command, timeout=settings.backend_timeout, cwd=cwd,
        ),
        gate_factory=lambda prd: CommandQualityGate(cwd, test_command=prd.config.test_command),
        settings=settings,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Subcommands
# ─────────────────────────────────────────────────────────────────────────────

async def cmd_validate(args, settings: Settings) -> int:
    prd = _load(args.prd)
    if prd is None:
        return 1
    order = validate_prd(prd)
    print(f"OK: {prd.project} — {len(prd.tasks)} task(s)")
    print("Execution order: " + " → ".join(order))
    return 0


async def cmd_plan(args, settings: Settings) -> int:
    prd = _load(args.prd)
    if prd is None:
        return 1
    project = args.project or prd.project
    db = Database(settings.db_path)
    try:
        routing = await _control_plane(db, settings).get_routing_plan(
            project, prd, _preference(args),
        )
    finally:
        await db.close()

    print(f"{'TASK':<24} {'MODEL':<14} {'TIER':<8} {'SOURCE':<11} {'SCORE':>5}  ESCALATION")
    print("-" * 80)
    for d in routing.decisions:
        path = " → ".join(d.escalation_path) if d.can_escalate else "(disabled)"
        print(f"{d.task_id:<24} {d.model:<14} {d.tier.value:<8} {d.source.value:<11} "
              f"{d.score:>5}  {path}")
        if d.reason:
            print(f"{'':<24} {d.reason}")
    print("-" * 80)
    plan = routing.plan
    print(f"Execution: {plan.mode.value} ({plan.suggested_agents} agent(s)) — {plan.reason}")
    print("By tier: " + ", ".join(f"{k}={v}" for k, v in routing.summary.by_tier.items()))
    return 0


async def cmd_estimate(args, settings: Settings) -> int:
    prd = _load(args.prd)
    if prd is None:
        return 1
    project = args.project or prd.project
    db = Database(settings.db_path)
    try:
        estimate = await _control_plane(db, settings).get_cost_estimate(project, prd)
    finally:
        await db.close()

    print(f"{'TASK':<24} {'MODEL':<14} {'TOKENS':>8} {'OPTIMISTIC':>11} "
          f"{'EXPECTED':>10} {'PESSIMISTIC':>12}")
    print("-" * 84)
    for t in estimate.tasks:
        print(f"{t.task_id:<24} {t.estimated_model:<14} {t.tokens.total:>8} "
              f"${t.optimistic_usd:>10.4f} ${t.expected_usd:>9.4f} ${t.pessimistic_usd:>11.4f}")
    print("-" * 84)
    print(f"{'TOTAL':<24} {'':<14} {estimate.total_tokens:>8} "
          f"${estimate.optimistic_usd:>10.4f} ${estimate.expected_usd:>9.4f} "
          f"${estimate.pessimistic_usd:>11.4f}")
    if args.budget is not None and estimate.will_exceed_budget(args.budget):
        print(f"WARNING: expected cost exceeds budget ${args.budget:.2f}")
        return 2
    return 0


async def cmd_stats(args, settings: Settings) -> int:
    db = Database(settings.db_path)
    try:
        cp = _control_plane(db, settings)
        routing = await cp.get_routing_stats(args.project)
        status = await cp.get_status(args.project)
        recent = await SessionStore(db, args.project).list_sessions(limit=args.limit)
    finally:
        await db.close()

    s = status.stats
    print(f"Project: {args.project}")
    print(f"Sessions: {s.total_sessions}  Attempts: {s.total_attempts}  "
          f"Success rate: {s.success_rate}%  Guardrails: {s.total_guardrails}")
    print(f"Routing patterns: {routing.total_patterns} "
          f"({routing.patterns_with_sufficient_data} with enough data)")
    print(f"Escalation rate: {routing.avg_escalation_rate:.1%}")
    for model, counts in sorted(routing.model_distribution.items()):
        print(f"  {model:<14} success={counts.get('success', 0):<5} fail={counts.get('fail', 0)}")
    if recent:
        print("Recent sessions:")
        for s in recent:
            print(f"  {s.id:<38} {s.status.value:<10} {s.completed_tasks}/{s.total_tasks} "
                  f"${s.total_cost_usd:.4f}  {s.started_at[:19]}")
    return 0


async def cmd_status(args, settings: Settings) -> int:
    db = Database(settings.db_path)
    try:
        report = await _control_plane(db, settings).get_status(args.project)
    finally:
        await db.close()

    if not report.has_active_session:
        print(f"No active session for {args.project}.")
        return 0
    p = report.progress
    print(f"Session {report.session_id}: {report.status}")
    print(f"Progress: {p.completed} completed, {p.failed} failed, {p.skipped} skipped "
          f"of {p.total} ({p.percentage}%)")
    if report.current_task:
        print(f"Current task: {report.current_task}")
    if not report.orchestrator_running:
        print("Orchestrator is not running; use 'cancel' to clean up.")
    print(f"Tokens: {report.tokens}  Cost: ${report.cost_usd:.4f}")
    return 0


async def cmd_run(args, settings: Settings) -> int:
    prd = _load(args.prd)
    if prd is None:
        return 1
    project = args.project or prd.project
    cwd = Path.cwd()
    db = Database(settings.db_path)
    try:
        orch = Orchestrator(
            project, db,
            backend=CommandBackend(settings.backend_command,
                                   timeout=settings.backend_timeout, cwd=cwd),
            quality_gate=CommandQualityGate(cwd, test_command=prd.config.test_command),
            options=RunOptions(
                prd_path=str(Path(args.prd).resolve()),
                session_id=args.session_id,
                preference=_preference(args),
                adaptive_routing=not args.no_adaptive,
                max_agents=settings.max_agents,
                # `cancel` from another terminal reaches this run only through the database
                watch_external_cancel=True,
            ),
        )
        try:
            session = await orch.run(prd)
        except InvalidTransitionError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
    finally:
        await db.close()

    print(f"Session {session.id}: {session.status.value} — "
          f"{session.completed_tasks}/{session.total_tasks} completed, "
          f"{session.failed_tasks} failed, {session.skipped_tasks} skipped, "
          f"${session.total_cost_usd:.4f}")
    return 0 if session.status.value == "completed" else 1


async def cmd_start(args, settings: Settings) -> int:
    if not args.background:
        return await cmd_run(args, settings)
    prd = _load(args.prd)
    if prd is None:
        return 1
    project = args.project or prd.project
    db = Database(settings.db_path)
    try:
        result = await _control_plane(db, settings).start(
            project, prd,
            StartOptions(prd_path=str(Path(args.prd).resolve()), background=True,
                         cwd=str(Path.cwd()), preference=_preference(args),
                         adaptive_routing=not args.no_adaptive),
        )
    finally:
        await db.close()

    if not result.success:
        print(f"ERROR: {result.error}", file=sys.stderr)
        return 1
    print(f"{result.message}")
    print(f"Session: {result.session_id}")
    print(f"Log: {result.log_file}")
    return 0


async def cmd_cancel(args, settings: Settings) -> int:
    db = Database(settings.db_path)
    try:
        result = await _control_plane(db, settings).cancel(args.project)
    finally:
        await db.close()
    if not result.success:
        print(f"ERROR: {result.error}", file=sys.stderr)
        return 1
    print(f"{result.message} ({result.session_id})")
    return 0


# ─────────────────────────────────────────────────────────────────────────────
# Parser
# ─────────────────────────────────────────────────────────────────────────────

def _routing_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--model", help="Route every task to this model")
    p.add_argument("--min-tier", choices=[t.value for t in Tier],
                   help="Never route below this tier")
    p.add_argument("--no-cascade", action="store_true",
                   help="Never escalate after a failure")


def _run_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("prd", help="PRD file (.yaml, .yml or .json)")
    p.add_argument("--project", help="Project key (default: the PRD's project)")
    p.add_argument("--session-id", default=None, help=argparse.SUPPRESS)
    p.add_argument("--no-adaptive", action="store_true",
                   help="Disable adaptive routing; use the PRD's default model")
    _routing_flags(p)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prd-orchestrator",
        description="PRD Orchestrator — adaptive model routing for PRD task runs",
    )
    parser.add_argument("--db", type=str, default=None,
                        help="SQLite state file (default: $PRD_ORCHESTRATOR_DB)")
    parser.add_argument("--verbose", "-v", action="store_true")
    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND")
    subparsers.required = True

    p = subparsers.add_parser("validate", help="Validate a PRD file")
    p.add_argument("prd")
    p.set_defaults(func=cmd_validate)

    p = subparsers.add_parser("plan", help="Show the routing plan for a PRD")
    p.add_argument("prd")
    p.add_argument("--project")
    _routing_flags(p)
    p.set_defaults(func=cmd_plan)

    p = subparsers.add_parser("estimate", help="Estimate the cost of a PRD")
    p.add_argument("prd")
    p.add_argument("--project")
    p.add_argument("--budget", type=float, default=None,
                   help="Exit 2 when the expected cost exceeds this (USD)")
    p.set_defaults(func=cmd_estimate)

    p = subparsers.add_parser("stats", help="Routing and session statistics")
    p.add_argument("--project", required=True)
    p.add_argument("--limit", type=int, default=5, help="Recent sessions to list")
    p.set_defaults(func=cmd_stats)

    p = subparsers.add_parser("status", help="Show the active session")
    p.add_argument("--project", required=True)
    p.set_defaults(func=cmd_status)

    p = subparsers.add_parser("run", help="Run a PRD in the foreground")
    _run_flags(p)
    p.set_defaults(func=cmd_run)

    p = subparsers.add_parser("start", help="Start a PRD session")
    _run_flags(p)
    p.add_argument("--background", action="store_true",
                   help="Detach; logs go to $PRD_ORCHESTRATOR_LOG_DIR")
    p.set_defaults(func=cmd_start)

    p = subparsers.add_parser("cancel", help="Cancel the active session")
    p.add_argument("--project", required=True)
    p.set_defaults(func=cmd_cancel)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    settings = Settings.from_env()
    if args.db:
        settings.db_path = Path(args.db).expanduser()
    if settings.tracing_enabled:
        configure_tracing(TracingConfig(enabled=True, otlp_endpoint=settings.otlp_endpoint))

    try:
        code = asyncio.run(args.func(args, settings))
    except UnknownModelError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        code = 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        code = 130
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
