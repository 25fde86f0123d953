"""FastMCP server exposing Ralphy runs as tools."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agent import AgentNotFoundError, AgentRunner
from .config import RalphySettings, configure_logging, get_settings
from .orchestrator import open_history
from .tasks import TaskSourceError, create_task_source
from .tools import register_tools


def _probe_engine(settings: RalphySettings) -> dict:
    metadata = {"engine": settings.engine, "available": False, "path": None, "error": None}
    try:
        runner = AgentRunner(
            settings.engine,
            Path(settings.engine_path) if settings.engine_path else None,
        )
    except AgentNotFoundError as exc:
        metadata["error"] = str(exc)
        return metadata
    metadata["available"] = True
    metadata["path"] = str(runner.executable)
    return metadata


def create_server(
    settings: Optional[RalphySettings] = None,
    runner: AgentRunner | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with tools and a status resource."""

    settings = settings or get_settings()

    if runner is None:
        engine_metadata = _probe_engine(settings)
        runner_factory = None
    else:
        engine_metadata = {
            "engine": settings.engine,
            "available": True,
            "path": str(runner.executable),
            "error": None,
        }
        runner_factory = lambda _settings: runner  # noqa: E731

    history = open_history(settings)
    history_metadata = {
        "enabled": settings.history_enabled,
        "available": history is not None,
        "path": str(settings.history_path),
        "collection": "ralphy_runs",
    }

    server = FastMCP(
        name="Ralphy",
        version=__version__,
        instructions=(
            "Ralphy drives coding agents (claude or opencode) through a task list "
            "until every task is complete. Use the tools to inspect tasks, start "
            "runs and read run history."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        history=history,
        runner_factory=runner_factory,
    )

    @server.resource(
        "resource://ralphy/status",
        name="ralphy_status",
        title="Ralphy Status",
        description="Current configuration, engine availability and task counts.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            source = create_task_source(settings)
            tasks = {
                "remaining": source.count_remaining(),
                "completed": source.count_completed(),
                "error": None,
            }
        except TaskSourceError as exc:
            tasks = {"remaining": None, "completed": None, "error": str(exc)}

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "engine": engine_metadata,
            "source": {
                "type": settings.task_source,
                "location": settings.github_repo or str(settings.prd_file),
                **tasks,
            },
            "mode": {
                "parallel": settings.parallel,
                "max_parallel": settings.max_parallel,
                "branch_per_task": settings.branch_per_task,
                "create_pr": settings.create_pr,
            },
            "history": history_metadata,
            "runs": handles.runs[-5:],
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "engine_metadata", engine_metadata)
    setattr(server, "history_metadata", history_metadata)
    setattr(server, "history", history)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Ralphy MCP server."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Ralphy MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "engine_available": getattr(server, "engine_metadata", {}).get("available"),
            "history_available": getattr(server, "history_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
