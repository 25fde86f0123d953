"""MCP tool registration for Ralphy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from fastmcp import Context, FastMCP

from ..agent import AgentRunner
from ..config import RalphySettings
from ..orchestrator import RunSummary, build_context, run_session
from ..storage import ChromaStore
from ..tasks import Task, TaskSource, create_task_source

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    list_tasks: Any
    task_counts: Any
    run_tasks: Any
    run_history: Any
    runs: list[dict[str, Any]] = field(default_factory=list)


def _task_payload(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "completed": task.completed,
        "parallel_group": task.parallel_group,
    }


def register_tools(
    server: FastMCP,
    *,
    settings: RalphySettings,
    history: ChromaStore | None,
    source_factory: Callable[[RalphySettings], TaskSource] = create_task_source,
    runner_factory: Callable[[RalphySettings], AgentRunner] | None = None,
) -> ToolHandles:
    """Register Ralphy's MCP tools on the server."""

    runs: list[dict[str, Any]] = []
    run_lock = asyncio.Lock()

    def _list_tasks(context: Context | None = None) -> list[dict[str, Any]]:
        """List pending tasks in execution order."""

        source = source_factory(settings)
        return [_task_payload(task) for task in source.all_pending()]

    def _task_counts(context: Context | None = None) -> dict[str, Any]:
        """Return remaining and completed task counts."""

        source = source_factory(settings)
        return {
            "source": settings.task_source,
            "remaining": source.count_remaining(),
            "completed": source.count_completed(),
        }

    async def _run_tasks(
        max_iterations: int | None = None,
        parallel: bool | None = None,
        max_parallel: int | None = None,
        dry_run: bool | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run agents over the pending tasks and return the run summary."""

        if run_lock.locked():
            raise RuntimeError("A run is already in progress")

        update: dict[str, Any] = {}
        for name, value in (
            ("max_iterations", max_iterations),
            ("parallel", parallel),
            ("max_parallel", max_parallel),
            ("dry_run", dry_run),
        ):
            if value is not None:
                update[name] = value
        run_settings = RalphySettings(**{**settings.model_dump(), **update})

        async with run_lock:
            ctx = build_context(
                run_settings,
                source=source_factory(run_settings),
                runner=runner_factory(run_settings) if runner_factory else None,
                history=history,
            )
            logger.info("Starting run", extra={"run_id": ctx.run_id})
            summary: RunSummary = await run_session(ctx)

        payload = {"run_id": ctx.run_id, **summary.to_dict()}
        runs.append(payload)
        logger.info(
            "Run finished",
            extra={"run_id": ctx.run_id, "termination": summary.termination.value},
        )
        return payload

    def _run_history(
        run_id: str | None = None,
        limit: int = 20,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return recorded agent runs, newest last; events of one run when ``run_id`` is set."""

        if history is None:
            return runs[-limit:]
        if run_id:
            events = history.fetch_run_events(run_id)
            return [
                {
                    "event_id": event.id,
                    "event_type": event.event_type,
                    "timestamp": event.timestamp.isoformat(),
                    "document": event.document,
                }
                for event in events[-limit:]
            ]
        return [
            {
                "run_id": record.run_id,
                "task_id": record.task_id,
                "agent_index": record.agent_index,
                "status": record.status,
                "branch": record.branch,
                "input_tokens": record.input_tokens,
                "output_tokens": record.output_tokens,
                "recorded_at": record.recorded_at.isoformat(),
            }
            for record in history.list_agent_runs()[-limit:]
        ]

    tool_list = server.tool(
        name="list_tasks",
        description="List pending tasks from the configured task source.",
    )(_list_tasks)

    tool_counts = server.tool(
        name="task_counts",
        description="Count remaining and completed tasks.",
    )(_task_counts)

    tool_run = server.tool(
        name="run_tasks",
        description="Run coding agents over pending tasks, sequentially or in parallel worktrees.",
    )(_run_tasks)

    tool_history = server.tool(
        name="run_history",
        description="Show recorded agent runs or the events of a single run.",
    )(_run_history)

    return ToolHandles(
        list_tasks=tool_list,
        task_counts=tool_counts,
        run_tasks=tool_run,
        run_history=tool_history,
        runs=runs,
    )


__all__ = ["ToolHandles", "register_tools"]
