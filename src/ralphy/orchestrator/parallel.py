"""Batched parallel execution, one isolated worktree per agent."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from ..git import GitCommandError, WorkspaceError, WorktreeHandle, WorktreeManager
from ..tasks import Task
from .context import OrchestrationContext, RunSummary, Termination
from .progress import ProgressDisplay, format_batch_line
from .prompts import build_parallel_prompt
from .retry import RetryController

logger = logging.getLogger(__name__)

PR_BODY = "Automated implementation by Ralphy (Agent {index})"


class AgentStatus(str, Enum):
    WAITING = "waiting"
    SETTING_UP = "setting_up"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


_RANK = {
    AgentStatus.WAITING: 0,
    AgentStatus.SETTING_UP: 1,
    AgentStatus.RUNNING: 2,
    AgentStatus.DONE: 3,
    AgentStatus.FAILED: 3,
}


@dataclass(slots=True, eq=False)
class AgentRun:
    """One slot of a batch: a task bound to an agent index and its workspace."""

    agent_index: int
    task: Task
    status: AgentStatus = AgentStatus.WAITING
    branch_name: str | None = None
    worktree: WorktreeHandle | None = None
    attempts: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float | None = None
    error: str | None = None
    log_buffer: list[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in (AgentStatus.DONE, AgentStatus.FAILED)

    def advance(self, status: AgentStatus) -> None:
        """Move forward through waiting, setting_up, running, done/failed."""

        if self.terminal or _RANK[status] <= _RANK[self.status]:
            raise ValueError(f"Agent {self.agent_index}: cannot go from {self.status.value} to {status.value}")
        self.status = status

    def fail(self, error: str) -> None:
        self.error = error
        self.log(error)
        if not self.terminal:
            self.advance(AgentStatus.FAILED)

    def log(self, message: str) -> None:
        self.log_buffer.append(message)


def plan_batches(tasks: Sequence[Task], max_parallel: int) -> list[list[Task]]:
    """Split ``tasks`` in order into consecutive batches of at most ``max_parallel``."""

    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    return [list(tasks[start : start + max_parallel]) for start in range(0, len(tasks), max_parallel)]


class ParallelScheduler:
    """Run pending tasks in batches; batches run one after another."""

    def __init__(
        self,
        ctx: OrchestrationContext,
        retry: RetryController,
        worktrees: WorktreeManager,
        *,
        display: ProgressDisplay | None = None,
    ) -> None:
        self.ctx = ctx
        self.retry = retry
        self.worktrees = worktrees
        self.display = display or ProgressDisplay(enabled=False)

    async def run(self) -> RunSummary:
        ctx = self.ctx
        pending = ctx.source.all_pending()
        if not pending:
            logger.info("No pending tasks")
            return ctx.summary(Termination.NO_TASKS)

        base_branch = await self._resolve_base_branch()
        batches = plan_batches(pending, ctx.settings.max_parallel)
        logger.info(
            "Running %d task(s) in %d batch(es) of up to %d agents from %s",
            len(pending),
            len(batches),
            ctx.settings.max_parallel,
            base_branch,
        )

        termination = Termination.DRY_RUN if ctx.settings.dry_run else Termination.ALL_COMPLETE
        agent_index = 0
        try:
            for number, batch in enumerate(batches, start=1):
                runs = []
                for task in batch:
                    agent_index += 1
                    ctx.next_iteration()
                    runs.append(AgentRun(agent_index=agent_index, task=task))
                await self.run_batch(number, runs, base_branch)
                self._collect(runs)
                if ctx.iterations_exhausted and number < len(batches):
                    logger.warning("Reached max iterations (%d)", ctx.settings.max_iterations)
                    termination = Termination.MAX_ITERATIONS
                    break
        finally:
            await self.worktrees.cleanup_all()
        return ctx.summary(termination)

    async def _resolve_base_branch(self) -> str:
        if self.ctx.settings.base_branch:
            return self.ctx.settings.base_branch
        if self.ctx.settings.dry_run:
            return "HEAD"
        return await self.worktrees.git.current_branch()

    async def run_batch(self, number: int, runs: list[AgentRun], base_branch: str) -> None:
        logger.info(
            "Batch %d: %s",
            number,
            ", ".join(f"agent {run.agent_index} -> {run.task.title}" for run in runs),
        )
        monitor = asyncio.create_task(self._monitor(runs))
        try:
            await asyncio.gather(*(self._run_slot(run, base_branch) for run in runs))
        finally:
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)
            self.display.clear()

    async def _run_slot(self, run: AgentRun, base_branch: str) -> None:
        ctx = self.ctx
        assert ctx.slots is not None
        async with ctx.slots:
            run.advance(AgentStatus.SETTING_UP)
            prompt = build_parallel_prompt(run.task, ctx.settings)
            try:
                if ctx.settings.dry_run:
                    outcome = await self.retry.run(prompt, ctx.work_dir)
                    run.advance(AgentStatus.RUNNING)
                    run.log(outcome.prompt)
                    run.advance(AgentStatus.DONE)
                    return
                async with self.worktrees.acquire(run.task, run.agent_index, base_branch) as handle:
                    await self._run_in_worktree(run, handle, prompt)
            except WorkspaceError as exc:
                run.fail(str(exc))
            except Exception as exc:
                logger.exception("Agent %d crashed", run.agent_index)
                run.fail(f"{type(exc).__name__}: {exc}")
            finally:
                if run.worktree is not None:
                    self._record_worktree(run, run.worktree, "released")
                self._record(run)

    async def _run_in_worktree(self, run: AgentRun, handle: WorktreeHandle, prompt: str) -> None:
        ctx = self.ctx
        run.worktree = handle
        run.branch_name = handle.branch_name
        self._record_worktree(run, handle, "active")
        run.advance(AgentStatus.RUNNING)

        outcome = await self.retry.run(prompt, handle.directory, log=run.log)
        run.attempts = outcome.attempts
        if not outcome.success or outcome.result is None:
            run.fail(outcome.error or "agent produced no usable result")
            return

        result = outcome.result
        run.input_tokens = result.input_tokens
        run.output_tokens = result.output_tokens
        run.cost = result.cost
        run.log(result.response_text)

        if ctx.settings.create_pr:
            await self._open_pull_request(run, handle)
        run.advance(AgentStatus.DONE)

    async def _open_pull_request(self, run: AgentRun, handle: WorktreeHandle) -> None:
        git = self.worktrees.git
        try:
            await git.push(handle.branch_name, cwd=handle.directory)
            url = await git.create_pull_request(
                base=handle.base_branch,
                head=handle.branch_name,
                title=run.task.title,
                body=PR_BODY.format(index=run.agent_index),
                draft=self.ctx.settings.draft_pr,
                cwd=handle.directory,
            )
        except GitCommandError as exc:
            run.log(f"PR creation failed: {exc}")
            logger.warning("Failed to create PR for %s: %s", handle.branch_name, exc)
            return
        run.log(f"PR created: {url}")

    def _collect(self, runs: list[AgentRun]) -> None:
        ctx = self.ctx
        for run in runs:
            if run.status is AgentStatus.DONE:
                if not ctx.settings.dry_run:
                    ctx.mark_complete(run.task)
                ctx.input_tokens += run.input_tokens
                ctx.output_tokens += run.output_tokens
                if run.cost:
                    ctx.actual_cost += run.cost
                if run.branch_name:
                    ctx.add_branch(run.branch_name)
                logger.info(
                    "✓ Agent %d: %s -> %s",
                    run.agent_index,
                    run.task.title,
                    run.branch_name or "(dry run)",
                )
            else:
                ctx.mark_failed(run.task)
                logger.error("✗ Agent %d: %s (%s)", run.agent_index, run.task.title, run.error)
            for line in run.log_buffer:
                logger.debug("[agent %d] %s", run.agent_index, line)

    def _record_worktree(self, run: AgentRun, handle: WorktreeHandle, status: str) -> None:
        self.ctx.record(
            "record_worktree",
            task_id=run.task.id,
            path=str(handle.directory),
            branch=handle.branch_name,
            status=status,
            metadata={"agent_index": run.agent_index},
        )

    def _record(self, run: AgentRun) -> None:
        self.ctx.record(
            "record_agent_run",
            task_id=run.task.id,
            agent_index=run.agent_index,
            status=run.status.value,
            input_tokens=run.input_tokens,
            output_tokens=run.output_tokens,
            cost=run.cost,
            branch=run.branch_name,
            metadata={"attempts": run.attempts, "error": run.error or ""},
        )

    async def _monitor(self, runs: list[AgentRun]) -> None:
        if not self.display.enabled:
            return
        started = time.monotonic()
        while True:
            counts = Counter(run.status.value for run in runs)
            self.display.render(format_batch_line(counts, time.monotonic() - started))
            await asyncio.sleep(self.ctx.settings.poll_interval or 0.3)


__all__ = ["AgentRun", "AgentStatus", "ParallelScheduler", "plan_batches"]
