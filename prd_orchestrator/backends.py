"""
Execution backends and quality gates
====================================
The orchestrator only needs two capabilities from the outside world:

  ExecutionBackend.run(model, prompt)  → BackendResult
  QualityGate.check(task)              → QualityGateResult

CommandBackend drives any model CLI that reads a prompt on stdin (the
command template gets the model id via a {model} placeholder).
CommandQualityGate runs the PRD's test command plus each acceptance
criterion's verification command in the project directory.

Subprocesses run through asyncio so the event loop is never blocked.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .cascade import classify_error
from .models import BackendResult, ErrorCategory, QualityGateResult, Task
from .registry import estimate_cost, get_model

logger = logging.getLogger("prd_orchestrator.backends")

_CHARS_PER_TOKEN = 4
_TAIL = 500


@runtime_checkable
class ExecutionBackend(Protocol):
    async def run(self, model: str, prompt: str) -> BackendResult: ...


@runtime_checkable
class QualityGate(Protocol):
    async def check(self, task: Task) -> QualityGateResult: ...


def _tail(text: str, limit: int = _TAIL) -> str:
    text = text.strip()
    return text if len(text) <= limit else "…" + text[-limit:]


class CommandBackend:
    """
    Runs a model CLI as a subprocess, prompt on stdin.

    Token counts are estimated from character counts and priced with the
    model registry; timeouts are reported as ErrorCategory.TIMEOUT.
    """

    def __init__(self, command_template: str, timeout: float = 600.0,
                 cwd: Optional[str | Path] = None) -> None:
        self.command_template = command_template
        self.timeout = timeout
        self.cwd = str(cwd) if cwd else None

    async def run(self, model: str, prompt: str) -> BackendResult:
        model_id = get_model(model).id
        argv = shlex.split(self.command_template.format(model=model_id))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except FileNotFoundError:
            return BackendResult(
                success=False,
                error_category=ErrorCategory.UNKNOWN,
                error_message=f"backend command not found: {argv[0]}",
            )

        try:
            out, err = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return BackendResult(
                success=False,
                tokens_in=len(prompt) // _CHARS_PER_TOKEN,
                error_category=ErrorCategory.TIMEOUT,
                error_message=f"{model_id} timed out after {self.timeout:.0f}s",
            )

        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")
        tokens_in = len(prompt) // _CHARS_PER_TOKEN
        tokens_out = len(stdout) // _CHARS_PER_TOKEN
        cost = estimate_cost(model_id, tokens_in, tokens_out)

        if proc.returncode == 0:
            return BackendResult(success=True, tokens_in=tokens_in, tokens_out=tokens_out,
                                 cost_usd=cost, output=stdout)

        message = _tail(stderr or stdout) or f"exit code {proc.returncode}"
        return BackendResult(
            success=False,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost,
            error_category=classify_error(message),
            error_message=message,
            output=stdout,
        )


class CommandQualityGate:
    """
    Shell-command quality gate.

    Parameters
    ----------
    cwd:
        Directory the commands run in (the project root).
    test_command:
        Run before every task's own verification commands, if set.
    timeout:
        Per-command limit in seconds; exceeding it is an issue.
    """

    def __init__(self, cwd: str | Path, test_command: Optional[str] = None,
                 timeout: float = 300.0) -> None:
        self.cwd = str(cwd)
        self.test_command = test_command
        self.timeout = timeout

    async def check(self, task: Task) -> QualityGateResult:
        checks: list[tuple[str, Optional[str]]] = []
        if self.test_command:
            checks.append((self.test_command, None))
        for criterion in task.acceptance_criteria:
            if criterion.test_command:
                checks.append((criterion.test_command, criterion.expected))

        issues: list[str] = []
        for command, expected in checks:
            issue = await self._run(command, expected)
            if issue:
                issues.append(issue)
        if issues:
            logger.info("Task %s: quality gate found %d issue(s)", task.id, len(issues))
        return QualityGateResult(passed=not issues, issues=issues)

    async def _run(self, command: str, expected: Optional[str]) -> Optional[str]:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=self.cwd,
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return f"`{command}` timed out after {self.timeout:.0f}s"
        output = out.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            return f"`{command}` exited {proc.returncode}: {_tail(output, 200)}"
        if expected and expected not in output:
            return f"`{command}` output did not contain {expected!r}"
        return None
