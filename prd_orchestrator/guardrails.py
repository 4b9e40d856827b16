"""
Guardrails — lessons from failed tasks, fed back into later prompts
===================================================================
A task that fails for good leaves a guardrail behind: what went wrong and
what to do differently. Later attempts on tasks with the same signature or
an overlapping tag get the most severe matching guardrails appended to
their prompt.
"""
from __future__ import annotations

import logging
from typing import Optional, Sequence

from .cascade import CascadeOutcome
from .models import (
    ErrorCategory, Guardrail, GuardrailCategory, Severity, Task,
)
from .sessions import SessionStore
from .signature import normalize_tags, signature_for_task

logger = logging.getLogger("prd_orchestrator.guardrails")

MAX_PROMPT_GUARDRAILS = 5

# category → (guardrail category, severity, title, solution)
_LESSONS: dict[ErrorCategory, tuple[GuardrailCategory, Severity, str, str]] = {
    ErrorCategory.SYNTAX: (
        GuardrailCategory.CODE_QUALITY, Severity.MEDIUM,
        "Output did not parse",
        "Compile or lint the changed files before reporting the task done.",
    ),
    ErrorCategory.VALIDATION: (
        GuardrailCategory.TESTING, Severity.HIGH,
        "Acceptance checks failed",
        "Run every verification command from the acceptance criteria and fix "
        "failures before finishing.",
    ),
    ErrorCategory.CAPABILITY: (
        GuardrailCategory.ARCHITECTURE, Severity.HIGH,
        "Task exceeded model capability",
        "Split the work into smaller steps or route it to a stronger tier from the start.",
    ),
    ErrorCategory.TIMEOUT: (
        GuardrailCategory.PERFORMANCE, Severity.MEDIUM,
        "Attempt timed out",
        "Keep each step short and avoid long-running or interactive commands.",
    ),
    ErrorCategory.UNKNOWN: (
        GuardrailCategory.OTHER, Severity.LOW,
        "Task failed",
        "Re-read the task description and acceptance criteria before starting.",
    ),
}

_TAG_CATEGORIES: dict[str, GuardrailCategory] = {
    "security": GuardrailCategory.SECURITY,
    "database": GuardrailCategory.DATABASE,
    "api": GuardrailCategory.API,
    "dependencies": GuardrailCategory.DEPENDENCIES,
}

_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.HIGH: 1, Severity.MEDIUM: 2, Severity.LOW: 3}


def extract_guardrail(project: str, task: Task,
                      outcome: CascadeOutcome) -> Optional[Guardrail]:
    """Lesson from a failed outcome; None for successes."""
    failed = outcome.last_error
    if outcome.success or failed is None:
        return None

    category = failed.error_category or ErrorCategory.UNKNOWN
    g_category, severity, title, solution = _LESSONS[category]
    tags = list(normalize_tags(task.tags))
    for tag in tags:
        if tag in _TAG_CATEGORIES:
            g_category = _TAG_CATEGORIES[tag]
            break
    if g_category == GuardrailCategory.SECURITY:
        severity = Severity.CRITICAL

    detail = ((failed.error_message or "").strip() or category.value).splitlines()[0][:200]
    return Guardrail(
        project=project,
        category=g_category,
        severity=severity,
        title=title,
        problem=f"{title} on '{task.title}': {detail}",
        solution=solution,
        tags=tags,
        related_tasks=[task.id],
        signature_hash=signature_for_task(task).hash,
    )


async def record_lesson(store: SessionStore, task: Task,
                        outcome: CascadeOutcome) -> Optional[Guardrail]:
    """Extract and persist a guardrail unless the same problem is already known."""
    guardrail = extract_guardrail(store.project, task, outcome)
    if guardrail is None or await store.has_guardrail(guardrail.problem):
        return None
    await store.add_guardrail(guardrail)
    logger.info("Guardrail added for %s: %s", task.id, guardrail.title)
    return guardrail


async def relevant_guardrails(store: SessionStore, task: Task,
                              limit: int = MAX_PROMPT_GUARDRAILS) -> list[Guardrail]:
    sig = signature_for_task(task).hash
    tags = set(normalize_tags(task.tags))
    matches = [
        g for g in await store.guardrails()
        if g.signature_hash == sig or tags.intersection(g.tags)
    ]
    # stable sort keeps newest-first within a severity
    matches.sort(key=lambda g: _SEVERITY_RANK[g.severity])
    return matches[:limit]


def build_task_prompt(task: Task, guardrails: Sequence[Guardrail] = ()) -> str:
    lines = [f"# Task {task.id}: {task.title}"]
    if task.description:
        lines += ["", task.description]
    if task.acceptance_criteria:
        lines += ["", "## Acceptance criteria"]
        for c in task.acceptance_criteria:
            check = f" (verify: `{c.test_command}`)" if c.test_command else ""
            lines.append(f"- {c.description}{check}")
    if task.files_affected:
        lines += ["", "## Files", *(f"- {f}" for f in task.files_affected)]
    if guardrails:
        lines += ["", "## Lessons from previous attempts"]
        for g in guardrails:
            lines.append(f"- [{g.severity.value}] {g.problem} → {g.solution}")
    return "\n".join(lines)
