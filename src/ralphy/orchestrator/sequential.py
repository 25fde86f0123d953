"""Single-agent loop working directly in the repository."""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from ..agent import StepTracker
from ..git import GitCommandError, WorkspaceError, task_branch_name
from ..tasks import Task, TaskSourceError
from .context import OrchestrationContext, RunSummary, Termination
from .progress import SPINNER_INTERVAL, ProgressDisplay, format_step_line
from .prompts import build_prompt
from .retry import RetryController

logger = logging.getLogger(__name__)

PR_BODY = "Automated implementation by Ralphy"


class IterationStatus(str, Enum):
    CONTINUE = "continue"
    FAILED = "failed"
    ALL_DONE = "all_done"
    NO_TASKS = "no_tasks"
    DRY_RUN = "dry_run"


class SequentialOrchestrator:
    """Take the next pending task, run one agent on it, repeat."""

    def __init__(
        self,
        ctx: OrchestrationContext,
        retry: RetryController,
        *,
        display: ProgressDisplay | None = None,
        iteration_pause: float = 1.0,
    ) -> None:
        self.ctx = ctx
        self.retry = retry
        self.display = display or ProgressDisplay(enabled=False)
        self.iteration_pause = iteration_pause

    async def run(self) -> RunSummary:
        ctx = self.ctx
        base_branch: str | None = None
        if ctx.settings.branch_per_task:
            if ctx.git is None:
                raise WorkspaceError("branch-per-task mode requires a git client")
            base_branch = ctx.settings.base_branch or await ctx.git.current_branch()
            logger.info("Base branch: %s", base_branch)

        while True:
            status = await self.run_iteration(base_branch)
            if status is IterationStatus.NO_TASKS:
                termination = Termination.NO_TASKS if ctx.iteration == 0 else Termination.ALL_COMPLETE
                return ctx.summary(termination)
            if status is IterationStatus.ALL_DONE:
                return ctx.summary(Termination.ALL_COMPLETE)
            if status is IterationStatus.DRY_RUN:
                return ctx.summary(Termination.DRY_RUN)
            if ctx.iterations_exhausted:
                logger.warning("Reached max iterations (%d)", ctx.settings.max_iterations)
                return ctx.summary(Termination.MAX_ITERATIONS)
            await ctx.sleep(self.iteration_pause)

    async def run_iteration(self, base_branch: str | None) -> IterationStatus:
        ctx = self.ctx
        task = ctx.source.next_task()
        if task is None:
            logger.info("No more tasks")
            return IterationStatus.NO_TASKS

        iteration = ctx.next_iteration()
        logger.info(
            "Task %d: %s (completed %d, remaining %d)",
            iteration,
            task.title,
            len(ctx.completed_ids),
            ctx.source.count_remaining(),
        )

        prompt = build_prompt(task, ctx.settings)
        if ctx.settings.dry_run:
            outcome = await self.retry.run(prompt, ctx.work_dir)
            logger.info("Dry run; prompt for task %s:\n%s", task.id, outcome.prompt)
            return IterationStatus.DRY_RUN

        branch: str | None = None
        if base_branch is not None:
            try:
                branch = await self._create_task_branch(task, base_branch)
            except WorkspaceError as exc:
                logger.error("Could not prepare task branch: %s", exc)
                ctx.mark_failed(task)
                return IterationStatus.FAILED

        try:
            return await self._execute(task, prompt, iteration, branch, base_branch)
        finally:
            if branch is not None and base_branch is not None:
                await self._return_to_base(base_branch)

    async def _execute(
        self,
        task: Task,
        prompt: str,
        iteration: int,
        branch: str | None,
        base_branch: str | None,
    ) -> IterationStatus:
        ctx = self.ctx
        tracker = StepTracker(tracker_files=self._tracker_files())
        monitor = asyncio.create_task(self._monitor(tracker, task.title))
        try:
            outcome = await self.retry.run(
                prompt,
                ctx.work_dir,
                on_line=tracker.feed,
                log=lambda message: logger.warning("%s", message),
            )
        finally:
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)
            self.display.clear()

        if not outcome.success or outcome.result is None:
            logger.error(
                "Task failed after %d attempt(s): %s", outcome.attempts, outcome.error or "unknown error"
            )
            ctx.mark_failed(task)
            ctx.record(
                "record_agent_run",
                task_id=task.id,
                agent_index=0,
                status="failed",
                branch=branch,
                metadata={"iteration": iteration, "error": outcome.error or ""},
            )
            return IterationStatus.FAILED

        result = outcome.result
        ctx.add_usage(result)
        ctx.mark_complete(task)
        if branch is not None:
            ctx.add_branch(branch)
        logger.info("Completed: %s", task.title)
        logger.debug("Agent response: %s", result.response_text)
        ctx.record(
            "record_agent_run",
            task_id=task.id,
            agent_index=0,
            status="done",
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=result.cost,
            branch=branch,
            metadata={"iteration": iteration, "attempts": outcome.attempts},
        )

        if branch is not None and base_branch is not None and ctx.settings.create_pr:
            await self._open_pull_request(task, branch, base_branch)

        if result.signals_completion:
            self._check_marker_agreement()
            return IterationStatus.ALL_DONE
        return IterationStatus.CONTINUE

    def _tracker_files(self) -> tuple[str, ...]:
        return (self.ctx.settings.prd_file.name.lower(), "progress.txt")

    def _check_marker_agreement(self) -> None:
        try:
            remaining = self.ctx.source.count_remaining()
        except TaskSourceError as exc:
            logger.warning("Could not verify remaining tasks: %s", exc)
            return
        if remaining > 0:
            logger.warning(
                "Agent reported all tasks complete but %d task(s) remain pending; stopping",
                remaining,
            )
            self.ctx.marker_disagreement = True
        else:
            logger.info("All tasks complete")

    async def _monitor(self, tracker: StepTracker, title: str) -> None:
        if not self.display.enabled:
            return
        started = time.monotonic()
        frame = 0
        while True:
            self.display.render(
                format_step_line(frame, tracker.current.value, title, time.monotonic() - started)
            )
            frame += 1
            await asyncio.sleep(SPINNER_INTERVAL)

    async def _create_task_branch(self, task: Task, base_branch: str) -> str:
        git = self.ctx.git
        assert git is not None
        branch = task_branch_name(task)
        logger.info("Creating branch %s from %s", branch, base_branch)
        origin = await git.current_branch()
        try:
            stashed = await git.stash_push(f"ralphy-autostash-{task.id}")
        except GitCommandError as exc:
            raise WorkspaceError(f"Failed to stash local changes: {exc}") from exc
        try:
            await git.checkout(base_branch)
            if not await git.pull(base_branch):
                logger.debug("Pull of %s failed; continuing with local state", base_branch)
            try:
                await git.checkout(branch, create=True)
            except GitCommandError:
                await git.checkout(branch)
            if stashed:
                await git.stash_pop()
        except GitCommandError as exc:
            await self._restore_workspace(origin, stashed)
            raise WorkspaceError(f"Failed to create branch {branch}: {exc}") from exc
        return branch

    async def _restore_workspace(self, origin: str, stashed: bool) -> None:
        """Put the user back on ``origin`` with their stashed changes applied."""

        git = self.ctx.git
        assert git is not None
        try:
            if await git.current_branch() != origin:
                await git.checkout(origin)
            if stashed:
                await git.stash_pop()
        except GitCommandError as exc:
            logger.error(
                "Could not restore %s; local changes may remain in the stash: %s",
                origin,
                exc,
            )

    async def _return_to_base(self, base_branch: str) -> None:
        assert self.ctx.git is not None
        try:
            await self.ctx.git.checkout(base_branch)
        except GitCommandError as exc:
            logger.warning("Could not return to %s: %s", base_branch, exc)

    async def _open_pull_request(self, task: Task, branch: str, base_branch: str) -> None:
        git = self.ctx.git
        assert git is not None
        try:
            await git.push(branch)
            url = await git.create_pull_request(
                base=base_branch,
                head=branch,
                title=task.title,
                body=PR_BODY,
                draft=self.ctx.settings.draft_pr,
            )
        except GitCommandError as exc:
            logger.warning("Failed to create PR for %s: %s", branch, exc)
            return
        logger.info("PR created: %s", url)


__all__ = ["IterationStatus", "SequentialOrchestrator"]
