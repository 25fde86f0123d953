"""Prompt construction for agent invocations."""

from __future__ import annotations

from ..config import RalphySettings
from ..agent import COMPLETION_MARKER
from ..tasks import Task

PROGRESS_FILE = "progress.txt"


def _context_header(task: Task, settings: RalphySettings) -> str:
    if settings.task_source == "github":
        body = task.body or "(no description)"
        return (
            f"Task from GitHub Issue: {task.title}\n\n"
            f"Issue Description:\n{body}\n\n"
            f"@{PROGRESS_FILE}"
        )
    return f"@{settings.prd_file} @{PROGRESS_FILE}"


def _mark_complete_step(settings: RalphySettings) -> str:
    if settings.task_source == "yaml":
        return f"Update {settings.prd_file} to mark the task as completed (set completed: true)."
    if settings.task_source == "github":
        return f"The task will be marked complete automatically. Just note the completion in {PROGRESS_FILE}."
    return "Update the PRD to mark the task as complete (change '- [ ]' to '- [x]')."


def build_prompt(task: Task, settings: RalphySettings) -> str:
    """Prompt for the single-agent loop, working directly in the repository."""

    steps = [f"Implement this task: {task.title}"]
    if task.body and settings.task_source != "github":
        steps[0] += f"\n   Details: {task.body.strip()}"
    if not settings.skip_tests:
        steps.append("Write tests for the feature.")
        steps.append("Run tests and ensure they pass before proceeding.")
    if not settings.skip_lint:
        steps.append("Run linting and ensure it passes before proceeding.")
    steps.append(_mark_complete_step(settings))
    steps.append(f"Append your progress to {PROGRESS_FILE}.")
    steps.append("Commit your changes with a descriptive message.")

    lines = [_context_header(task, settings)]
    lines.extend(f"{number}. {text}" for number, text in enumerate(steps, start=1))

    rules = "ONLY WORK ON A SINGLE TASK."
    if not settings.skip_tests:
        rules += " Do not proceed if tests fail."
    if not settings.skip_lint:
        rules += " Do not proceed if linting fails."
    lines.append(rules)
    lines.append(f"If ALL tasks in the PRD are complete, output {COMPLETION_MARKER}.")
    return "\n".join(lines)


def build_parallel_prompt(task: Task, settings: RalphySettings) -> str:
    """Prompt for one worktree agent; task bookkeeping stays with the scheduler."""

    instructions = ["Implement this specific task completely"]
    if not settings.skip_tests:
        instructions.append("Write tests if appropriate")
    instructions.append(f"Update {PROGRESS_FILE} with what you did")
    instructions.append("Commit your changes with a descriptive message")

    lines = [
        "You are working on a specific task. Focus ONLY on this task:",
        "",
        f"TASK: {task.title}",
    ]
    if task.body:
        lines.extend(["", task.body.strip()])
    lines.extend(["", "Instructions:"])
    lines.extend(f"{number}. {text}" for number, text in enumerate(instructions, start=1))
    lines.extend(
        [
            "",
            f"Do NOT modify {settings.prd_file.name} or mark tasks complete - that will be handled separately.",
            f"Focus only on implementing: {task.title}",
        ]
    )
    return "\n".join(lines)


__all__ = ["build_parallel_prompt", "build_prompt"]
