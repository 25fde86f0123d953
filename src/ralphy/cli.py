"""Command line entry point: ``ralphy``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import signal
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from . import __version__
from .agent import AgentNotFoundError
from .config import RalphySettings, configure_logging
from .git import WorkspaceError
from .orchestrator import ProgressDisplay, RunSummary, Termination, build_context, run_session
from .tasks import TaskSourceError

logger = logging.getLogger("ralphy")

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralphy",
        description="Run coding agents over a task list until every task is done.",
    )
    parser.add_argument("--version", action="version", version=f"ralphy {__version__}")

    engine = parser.add_mutually_exclusive_group()
    engine.add_argument("--claude", dest="engine", action="store_const", const="claude", help="Use the claude CLI (default)")
    engine.add_argument("--opencode", dest="engine", action="store_const", const="opencode", help="Use the opencode CLI")

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--prd", metavar="FILE", help="Markdown checklist file (default: PRD.md)")
    source.add_argument("--yaml", metavar="FILE", help="YAML task file")
    source.add_argument("--markdown-folder", metavar="DIR", help="Folder of markdown checklists")
    source.add_argument("--github", metavar="OWNER/REPO", help="Use open GitHub issues as tasks")
    parser.add_argument("--github-label", metavar="LABEL", help="Only issues carrying this label")

    parser.add_argument("--no-tests", "--skip-tests", dest="skip_tests", action="store_true", default=None, help="Do not ask the agent to write or run tests")
    parser.add_argument("--no-lint", "--skip-lint", dest="skip_lint", action="store_true", default=None, help="Do not ask the agent to lint")
    parser.add_argument("--fast", action="store_true", help="Same as --no-tests --no-lint")

    parser.add_argument("--max-iterations", type=int, metavar="N", help="Stop after N tasks (0 = unlimited)")
    parser.add_argument("--max-retries", type=int, metavar="N", help="Attempts per task (default: 3)")
    parser.add_argument("--retry-delay", type=float, metavar="SECONDS", help="Pause between attempts (default: 5)")
    parser.add_argument("--dry-run", action="store_true", default=None, help="Show prompts without running agents")

    parser.add_argument("--parallel", action="store_true", default=None, help="Run tasks concurrently in git worktrees")
    parser.add_argument("--max-parallel", type=int, metavar="N", help="Agents per batch (default: 3)")

    parser.add_argument("--branch-per-task", action="store_true", default=None, help="Create a branch for each task")
    parser.add_argument("--base-branch", metavar="NAME", help="Branch to start from (default: current)")
    parser.add_argument("--create-pr", action="store_true", default=None, help="Open a pull request per task")
    parser.add_argument("--draft-pr", action="store_true", default=None, help="Open pull requests as drafts")

    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def settings_from_args(args: argparse.Namespace) -> RalphySettings:
    """Layer command line flags over environment/.env configuration."""

    overrides: dict[str, Any] = {}
    if args.engine:
        overrides["engine"] = args.engine
    if args.prd:
        overrides.update(task_source="markdown", prd_file=Path(args.prd))
    elif args.yaml:
        overrides.update(task_source="yaml", prd_file=Path(args.yaml))
    elif args.markdown_folder:
        overrides.update(task_source="markdown-folder", prd_file=Path(args.markdown_folder))
    elif args.github:
        overrides.update(task_source="github", github_repo=args.github)
    if args.github_label:
        overrides["github_label"] = args.github_label

    if args.fast:
        overrides.update(skip_tests=True, skip_lint=True)
    for name in (
        "skip_tests",
        "skip_lint",
        "dry_run",
        "parallel",
        "branch_per_task",
        "create_pr",
        "draft_pr",
        "max_iterations",
        "max_retries",
        "retry_delay",
        "max_parallel",
        "base_branch",
    ):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    if overrides.get("draft_pr"):
        overrides["create_pr"] = True
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return RalphySettings(**overrides)


def preflight(settings: RalphySettings) -> list[str]:
    """Return blocking problems with the environment, if any."""

    problems: list[str] = []
    if settings.task_source in ("markdown", "yaml") and not settings.prd_file.is_file():
        problems.append(f"{settings.prd_file} not found")
    if settings.task_source == "markdown-folder" and not settings.prd_file.is_dir():
        problems.append(f"{settings.prd_file} is not a directory")
    needs_gh = settings.task_source == "github" or settings.create_pr
    if needs_gh and shutil.which("gh") is None:
        problems.append("GitHub CLI (gh) is required for GitHub issues and pull requests")
    needs_git = settings.parallel or settings.branch_per_task
    if needs_git and shutil.which("git") is None:
        problems.append("git is required for --parallel and --branch-per-task")
    return problems


def format_summary(summary: RunSummary) -> str:
    cost_label = "estimated cost" if summary.cost_is_estimate else "cost"
    lines = [
        f"Finished: {summary.termination.value} after {summary.iterations} iteration(s)",
        f"Tasks completed: {len(summary.completed_tasks)}",
    ]
    if summary.failed_tasks:
        lines.append(f"Tasks failed: {len(summary.failed_tasks)} ({', '.join(summary.failed_tasks)})")
    lines.append(
        f"Tokens: {summary.input_tokens} in / {summary.output_tokens} out "
        f"({summary.total_tokens} total), {cost_label}: ${summary.cost:.4f}"
    )
    if summary.branches:
        lines.append("Branches:")
        lines.extend(f"  - {branch}" for branch in summary.branches)
    if summary.marker_disagreement:
        lines.append("Warning: the agent reported completion while tasks were still pending")
    return "\n".join(lines)


async def _run(settings: RalphySettings) -> RunSummary:
    progress_file = Path.cwd() / "progress.txt"
    if not progress_file.exists() and not settings.dry_run:
        logger.warning("progress.txt not found, creating it")
        progress_file.touch()

    ctx = build_context(settings)
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, main_task.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        return await run_session(ctx, display=ProgressDisplay())
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await ctx.runner.registry.terminate_all()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    problems = preflight(settings)
    if problems:
        for problem in problems:
            logger.error(problem)
        return 1

    try:
        summary = asyncio.run(_run(settings))
    except (AgentNotFoundError, TaskSourceError, WorkspaceError) as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED

    print(format_summary(summary))
    if summary.termination is Termination.INTERRUPTED:
        return EXIT_INTERRUPTED
    return 0


if __name__ == "__main__":
    sys.exit(main())
