"""Bounded retry around a single agent invocation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from ..agent import AgentRunner, ExecutionResult, detect_error, get_decoder
from ..agent.utils import truncate

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]


class InvocationError(RuntimeError):
    """One attempt produced no usable result; the controller may try again."""


@dataclass(slots=True)
class AttemptOutcome:
    """Terminal result of a retried invocation."""

    success: bool
    attempts: int
    prompt: str
    result: ExecutionResult | None = None
    error: str | None = None
    dry_run: bool = False


class RetryController:
    """Invoke, decode and validate with up to ``max_attempts`` tries.

    An attempt counts as failed when the agent prints nothing or when an error
    record appears in its output. Failed attempts are separated by a fixed
    ``delay``. Environment failures (the process cannot be started) end the
    loop immediately.
    """

    def __init__(
        self,
        runner: AgentRunner,
        *,
        max_attempts: int = 3,
        delay: float = 5.0,
        decoder: str = "auto",
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.runner = runner
        self.max_attempts = max_attempts
        self.delay = delay
        self.decoder = get_decoder(decoder)
        self.dry_run = dry_run
        self._sleep = sleep

    async def run(
        self,
        prompt: str,
        work_dir: Path,
        *,
        on_line: Callable[[str], None] | None = None,
        log: LogCallback | None = None,
    ) -> AttemptOutcome:
        if self.dry_run:
            return AttemptOutcome(
                success=True,
                attempts=0,
                prompt=prompt,
                result=ExecutionResult(success=True, response_text="(dry run) skipped"),
                dry_run=True,
            )

        emit = log or (lambda message: logger.warning(message))
        attempt = 0
        last_error: str | None = None
        while attempt < self.max_attempts:
            attempt += 1
            try:
                result = await self._attempt(prompt, work_dir, on_line, log)
            except InvocationError as exc:
                last_error = str(exc)
                emit(f"Attempt {attempt}/{self.max_attempts} failed: {last_error}")
                if attempt < self.max_attempts:
                    await self._sleep(self.delay)
                continue
            except OSError as exc:
                last_error = f"Failed to start agent: {exc}"
                emit(last_error)
                break
            return AttemptOutcome(success=True, attempts=attempt, prompt=prompt, result=result)

        return AttemptOutcome(success=False, attempts=attempt, prompt=prompt, error=last_error)

    async def _attempt(
        self,
        prompt: str,
        work_dir: Path,
        on_line: Callable[[str], None] | None,
        log: LogCallback | None,
    ) -> ExecutionResult:
        if on_line is None:
            execution = await self.runner.invoke(prompt, work_dir)
        else:
            execution = await self.runner.invoke_streaming(prompt, work_dir, on_line)

        if execution.stderr.strip() and log is not None:
            log(truncate(execution.stderr.strip(), 2000))

        raw = execution.stdout
        if not raw.strip():
            raise InvocationError(f"Empty response (exit code {execution.returncode})")
        error = detect_error(raw)
        if error:
            raise InvocationError(f"Agent error: {error}")
        return self.decoder.parse_result(raw)


__all__ = ["AttemptOutcome", "InvocationError", "RetryController"]
