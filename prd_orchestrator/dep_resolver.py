"""
Dependency Resolver — task-list validation and deterministic execution order
============================================================================
Three checks run to completion on every validation and all their errors are
reported together:

  duplicates   — every id that appears more than once, listed once
  cycles       — DFS with an explicit recursion stack; each cycle reported
                 as its exact path, e.g. "A -> B -> A"
  missing      — every (task, dependency) pair whose dependency is absent

Ordering is Kahn's algorithm. When several tasks are ready at the same time
the one that appears first in the task list goes first, so the same input
list always produces the same order.
"""
from __future__ import annotations

import heapq
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Sequence

from .models import Task

logger = logging.getLogger("prd_orchestrator.dep_resolver")


class PRDValidationError(ValueError):
    """Raised when a PRD fails validation. Carries every error found."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass
class ValidationReport:
    duplicates: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    missing: list[tuple[str, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class DependencyResolver:
    """Validates task lists and orders them for execution."""

    # ── Validation ────────────────────────────────────────────────────────────

    def validate(self, tasks: Sequence[Task]) -> ValidationReport:
        report = ValidationReport()

        counts = Counter(t.id for t in tasks)
        seen: set[str] = set()
        for t in tasks:
            if counts[t.id] > 1 and t.id not in seen:
                report.duplicates.append(t.id)
            seen.add(t.id)
        if report.duplicates:
            report.errors.append(
                f"Duplicate task IDs found: {', '.join(report.duplicates)}"
            )

        ids = set(counts)
        for t in tasks:
            for dep in t.dependencies:
                if dep not in ids:
                    report.missing.append((t.id, dep))
                    report.errors.append(
                        f'Task "{t.id}" depends on non-existent task "{dep}"'
                    )

        report.cycles = self.find_cycles(tasks)
        for cycle in report.cycles:
            report.errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")

        return report

    def find_cycles(self, tasks: Sequence[Task]) -> list[list[str]]:
        """
        Every distinct dependency cycle as an ordered path that starts and
        ends on the node where the cycle was first entered.
        """
        graph: dict[str, list[str]] = {}
        order: list[str] = []
        for t in tasks:
            if t.id not in graph:
                order.append(t.id)
                graph[t.id] = []
            graph[t.id].extend(d for d in t.dependencies if d not in graph[t.id])

        visited: set[str] = set()
        on_stack: set[str] = set()
        cycles: list[list[str]] = []
        seen_cycles: set[tuple[str, ...]] = set()

        for root in order:
            if root in visited:
                continue
            # explicit stack of (node, iterator over its dependencies)
            stack: list[str] = [root]
            iters = [iter(graph.get(root, []))]
            visited.add(root)
            on_stack.add(root)
            while stack:
                try:
                    dep = next(iters[-1])
                except StopIteration:
                    on_stack.discard(stack.pop())
                    iters.pop()
                    continue
                if dep not in graph:
                    continue
                if dep in on_stack:
                    path = stack[stack.index(dep):] + [dep]
                    key = _canonical_cycle(path[:-1])
                    if key not in seen_cycles:
                        seen_cycles.add(key)
                        cycles.append(path)
                    continue
                if dep not in visited:
                    visited.add(dep)
                    on_stack.add(dep)
                    stack.append(dep)
                    iters.append(iter(graph[dep]))
        return cycles

    # ── Ordering ──────────────────────────────────────────────────────────────

    def resolve(self, tasks: Sequence[Task]) -> list[str]:
        """
        Execution order for a valid task list.

        Raises
        ------
        PRDValidationError — duplicates, cycles or missing dependencies
        """
        report = self.validate(tasks)
        if not report.valid:
            raise PRDValidationError(report.errors)
        return self._kahn(tasks)

    def levels(self, tasks: Sequence[Task]) -> list[list[str]]:
        """
        Group a valid task list into dependency levels.

        Level 0 holds tasks without dependencies; each later level holds the
        tasks whose dependencies all sit in earlier levels. Tasks inside a
        level keep their task-list order.
        """
        order = self.resolve(tasks)
        by_id = {t.id: t for t in tasks}
        depth: dict[str, int] = {}
        for tid in order:
            deps = by_id[tid].dependencies
            depth[tid] = 1 + max((depth[d] for d in deps), default=-1)
        index = {t.id: i for i, t in enumerate(tasks)}
        grouped: dict[int, list[str]] = defaultdict(list)
        for tid in sorted(depth, key=lambda t: index[t]):
            grouped[depth[tid]].append(tid)
        return [grouped[i] for i in sorted(grouped)]

    @staticmethod
    def _kahn(tasks: Sequence[Task]) -> list[str]:
        index = {t.id: i for i, t in enumerate(tasks)}
        in_degree = {t.id: 0 for t in tasks}
        dependents: dict[str, list[str]] = defaultdict(list)
        for t in tasks:
            for dep in set(t.dependencies):
                dependents[dep].append(t.id)
                in_degree[t.id] += 1

        ready = [(index[tid], tid) for tid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        result: list[str] = []
        while ready:
            _, node = heapq.heappop(ready)
            result.append(node)
            for child in dependents[node]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (index[child], child))

        if len(result) != len(tasks):
            stuck = [t.id for t in tasks if t.id not in set(result)]
            logger.error("Dependency cycle left tasks unordered: %s", stuck)
        return result


def _canonical_cycle(nodes: list[str]) -> tuple[str, ...]:
    """Rotation-independent key for a cycle's node list."""
    pivot = nodes.index(min(nodes))
    return tuple(nodes[pivot:] + nodes[:pivot])
