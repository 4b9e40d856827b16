"""
HookRegistry — lifecycle event hooks for sessions and tasks
===========================================================
A small pub-sub registry so callers can observe an orchestrator run without
touching engine code. Callbacks are synchronous; async callers can wrap
them with asyncio.create_task() if needed.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("prd_orchestrator.hooks")


class EventType(str, Enum):
    """
    Lifecycle events fired by Orchestrator.

    Callback signatures (all kwargs):
      SESSION_STARTED   — session: Session
      SESSION_PAUSED    — session_id: str
      SESSION_RESUMED   — session_id: str
      SESSION_CANCELLED — session_id: str
      SESSION_FINISHED  — session: Session
      TASK_STARTED      — task_id: str, decision: RoutingDecision
      TASK_COMPLETED    — task_id: str, outcome: CascadeOutcome
      TASK_SKIPPED      — task_id: str, reason: str
      MODEL_ESCALATED   — task_id: str, from_model: str, to_model: str, category: ErrorCategory
      GUARDRAIL_ADDED   — guardrail: Guardrail
    """
    SESSION_STARTED   = "session_started"
    SESSION_PAUSED    = "session_paused"
    SESSION_RESUMED   = "session_resumed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_FINISHED  = "session_finished"
    TASK_STARTED      = "task_started"
    TASK_COMPLETED    = "task_completed"
    TASK_SKIPPED      = "task_skipped"
    MODEL_ESCALATED   = "model_escalated"
    GUARDRAIL_ADDED   = "guardrail_added"


class HookRegistry:
    """
    Maps event names to lists of callbacks.

    Usage:
        hooks = HookRegistry()
        hooks.add(EventType.TASK_COMPLETED, lambda task_id, outcome, **_: print(task_id))

    Exceptions thrown by a callback are logged, so one bad hook never stops
    the others or the engine loop.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, list[Callable]] = defaultdict(list)

    @staticmethod
    def _key(event: str | EventType) -> str:
        return event.value if isinstance(event, EventType) else str(event)

    def add(self, event: str | EventType, callback: Callable) -> None:
        self._hooks[self._key(event)].append(callback)

    def fire(self, event: str | EventType, **kwargs) -> None:
        key = self._key(event)
        for cb in self._hooks.get(key, []):
            try:
                cb(**kwargs)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Hook callback %r raised for event %r: %s", cb, key, exc)

    def clear(self, event: Optional[str | EventType] = None) -> None:
        if event is None:
            self._hooks.clear()
        else:
            self._hooks.pop(self._key(event), None)

    def __len__(self) -> int:
        return sum(len(v) for v in self._hooks.values())
