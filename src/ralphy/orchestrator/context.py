"""Orchestration context threaded through every call of one run."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..agent import AgentRunner, ExecutionResult
from ..config import RalphySettings
from ..git import GitClient
from ..storage import ChromaStore
from ..tasks import Task, TaskSource

logger = logging.getLogger(__name__)

INPUT_PRICE_PER_TOKEN = 0.000003
OUTPUT_PRICE_PER_TOKEN = 0.000015


class Termination(str, Enum):
    ALL_COMPLETE = "all_complete"
    MAX_ITERATIONS = "max_iterations"
    NO_TASKS = "no_tasks"
    DRY_RUN = "dry_run"
    INTERRUPTED = "interrupted"


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    """Estimate USD cost from token counts at the default per-token prices."""

    return input_tokens * INPUT_PRICE_PER_TOKEN + output_tokens * OUTPUT_PRICE_PER_TOKEN


@dataclass(slots=True)
class RunSummary:
    """Outcome of one orchestration run as surfaced to callers."""

    termination: Termination
    iterations: int = 0
    completed_tasks: list[str] = field(default_factory=list)
    failed_tasks: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    actual_cost: float = 0.0
    branches: list[str] = field(default_factory=list)
    marker_disagreement: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cost_is_estimate(self) -> bool:
        return self.actual_cost <= 0

    @property
    def cost(self) -> float:
        if self.cost_is_estimate:
            return estimate_cost(self.input_tokens, self.output_tokens)
        return self.actual_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "termination": self.termination.value,
            "iterations": self.iterations,
            "completed_tasks": list(self.completed_tasks),
            "failed_tasks": list(self.failed_tasks),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cost": round(self.cost, 6),
            "cost_is_estimate": self.cost_is_estimate,
            "branches": list(self.branches),
            "marker_disagreement": self.marker_disagreement,
        }


def _new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"run-{stamp}-{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class OrchestrationContext:
    """Per-run state: collaborators, counters, totals.

    Workers share this object inside one event loop; every mutation happens
    without an intervening ``await`` so updates are atomic.
    """

    settings: RalphySettings
    source: TaskSource
    runner: AgentRunner
    work_dir: Path
    git: GitClient | None = None
    history: ChromaStore | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    run_id: str = field(default_factory=_new_run_id)
    iteration: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    actual_cost: float = 0.0
    completed_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    branches: list[str] = field(default_factory=list)
    marker_disagreement: bool = False
    slots: asyncio.Semaphore | None = None

    def __post_init__(self) -> None:
        if self.slots is None:
            self.slots = asyncio.Semaphore(self.settings.max_parallel)

    def next_iteration(self) -> int:
        self.iteration += 1
        return self.iteration

    @property
    def iterations_exhausted(self) -> bool:
        limit = self.settings.max_iterations
        return limit > 0 and self.iteration >= limit

    def mark_complete(self, task: Task) -> bool:
        """Mark ``task`` complete in the source once per run."""

        if task.id in self.completed_ids:
            return False
        self.source.mark_complete(task.id)
        self.completed_ids.append(task.id)
        return True

    def mark_failed(self, task: Task) -> None:
        if task.id not in self.failed_ids:
            self.failed_ids.append(task.id)

    def add_usage(self, result: ExecutionResult) -> None:
        self.input_tokens += result.input_tokens
        self.output_tokens += result.output_tokens
        if result.cost:
            self.actual_cost += result.cost

    def add_branch(self, branch: str) -> None:
        if branch not in self.branches:
            self.branches.append(branch)

    def record(self, method: str, **kwargs: Any) -> None:
        """Forward to the history store, if any; storage trouble never stops a run."""

        if self.history is None:
            return
        try:
            getattr(self.history, method)(run_id=self.run_id, **kwargs)
        except Exception as exc:
            logger.warning(
                "Run history unavailable; disabling",
                extra={"run_id": self.run_id, "error": str(exc)},
            )
            self.history = None

    def summary(self, termination: Termination) -> RunSummary:
        summary = RunSummary(
            termination=termination,
            iterations=self.iteration,
            completed_tasks=list(self.completed_ids),
            failed_tasks=[task_id for task_id in self.failed_ids if task_id not in self.completed_ids],
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            actual_cost=self.actual_cost,
            branches=list(self.branches),
            marker_disagreement=self.marker_disagreement,
        )
        self.record(
            "record_event",
            event_type="run_summary",
            body=summary.to_dict(),
            metadata={"termination": termination.value, "iterations": self.iteration},
        )
        return summary


__all__ = [
    "OrchestrationContext",
    "RunSummary",
    "Termination",
    "estimate_cost",
]
