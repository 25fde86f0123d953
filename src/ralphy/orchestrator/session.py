"""Wire settings into a ready-to-run orchestrator and run it to completion."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from ..agent import AgentRunner
from ..config import RalphySettings
from ..git import GitClient, WorkspaceError, WorktreeManager
from ..storage import ChromaStore, HistoryUnavailableError
from ..tasks import TaskSource, create_task_source
from .context import OrchestrationContext, RunSummary, Termination
from .parallel import ParallelScheduler
from .progress import ProgressDisplay
from .retry import RetryController
from .sequential import SequentialOrchestrator

logger = logging.getLogger(__name__)


def open_history(settings: RalphySettings) -> ChromaStore | None:
    """Return a reachable history store, or ``None`` when disabled or unavailable."""

    if not settings.history_enabled:
        return None
    try:
        store = ChromaStore(settings.history_path)
        store.ping()
    except HistoryUnavailableError as exc:
        logger.warning("Run history disabled", extra={"error": str(exc)})
        return None
    return store


def seed_files_for(settings: RalphySettings) -> tuple[Path, ...]:
    """Files copied into each worktree so agents can read the task list."""

    if settings.task_source == "github":
        return ()
    return (settings.prd_file,)


def build_context(
    settings: RalphySettings,
    *,
    work_dir: Path | None = None,
    source: TaskSource | None = None,
    runner: AgentRunner | None = None,
    git: GitClient | None = None,
    history: ChromaStore | None = None,
) -> OrchestrationContext:
    work_dir = Path(work_dir) if work_dir else Path.cwd()
    if runner is None:
        runner = AgentRunner(
            settings.engine,
            Path(settings.engine_path) if settings.engine_path else None,
        )
    return OrchestrationContext(
        settings=settings,
        source=source or create_task_source(settings),
        runner=runner,
        work_dir=work_dir,
        git=git or GitClient(work_dir),
        history=history if history is not None else open_history(settings),
    )


async def run_session(
    ctx: OrchestrationContext,
    *,
    display: ProgressDisplay | None = None,
    worktrees: WorktreeManager | None = None,
) -> RunSummary:
    """Run the sequential loop or the parallel scheduler as configured.

    Cancellation (an interrupt) terminates live agent processes, removes
    worktrees and yields a summary with ``interrupted`` termination.
    """

    settings = ctx.settings
    retry = RetryController(
        ctx.runner,
        max_attempts=settings.max_retries,
        delay=settings.retry_delay,
        decoder=settings.decoder_profile,
        dry_run=settings.dry_run,
        sleep=ctx.sleep,
    )

    if settings.parallel:
        if worktrees is None:
            if ctx.git is None:
                raise WorkspaceError("parallel mode requires a git repository")
            worktrees = WorktreeManager(
                ctx.git,
                settings.worktree_base,
                seed_files=seed_files_for(settings),
            )
        orchestrator: SequentialOrchestrator | ParallelScheduler = ParallelScheduler(
            ctx, retry, worktrees, display=display
        )
    else:
        orchestrator = SequentialOrchestrator(ctx, retry, display=display)

    logger.info(
        "Starting run",
        extra={
            "run_id": ctx.run_id,
            "engine": settings.engine,
            "source": settings.task_source,
            "mode": "parallel" if settings.parallel else "sequential",
        },
    )
    try:
        return await orchestrator.run()
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None:
            current.uncancel()
        logger.warning("Interrupted; stopping agents and cleaning up")
        await ctx.runner.registry.terminate_all()
        if worktrees is not None:
            await worktrees.cleanup_all()
        return ctx.summary(Termination.INTERRUPTED)


__all__ = ["build_context", "open_history", "run_session", "seed_files_for"]
