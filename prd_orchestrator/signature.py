"""
Task signatures — the grouping key for routing history
======================================================
Two tasks with the same complexity, the same tag set and the same
files bucket share a signature, regardless of tag order.
"""
from __future__ import annotations

import hashlib
import json
from typing import Iterable, Optional

from .models import Complexity, Task, TaskSignature

# few ≤2, some 3–5, many ≥6
_FEW_MAX = 2
_SOME_MAX = 5


def files_range(file_count: int) -> str:
    if file_count <= _FEW_MAX:
        return "few"
    if file_count <= _SOME_MAX:
        return "some"
    return "many"


def normalize_tags(tags: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({t.strip().lower() for t in tags if t.strip()}))


def compute_signature(
    complexity: Optional[Complexity | str],
    tags: Iterable[str],
    file_count: int,
) -> TaskSignature:
    cx = Complexity(complexity) if complexity else Complexity.MODERATE
    norm_tags = normalize_tags(tags)
    bucket = files_range(file_count)
    payload = json.dumps(
        {"complexity": cx.value, "tags": list(norm_tags), "filesRange": bucket},
        separators=(",", ":"),
    )
    digest = hashlib.md5(payload.encode("utf-8")).hexdigest()[:12]
    return TaskSignature(hash=digest, complexity=cx, tags=norm_tags,
                         files_range=bucket)


def signature_for_task(task: Task) -> TaskSignature:
    return compute_signature(task.complexity, task.tags, len(task.files_affected))
