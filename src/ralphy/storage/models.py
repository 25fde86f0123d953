"""Data models for persisted run history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class WorktreeRecord:
    task_id: str
    path: str
    branch: str | None
    created_at: datetime
    status: str
    metadata: dict[str, Any]


@dataclass(slots=True)
class AgentRunRecord:
    run_id: str
    task_id: str
    agent_index: int
    recorded_at: datetime
    status: str
    input_tokens: int
    output_tokens: int
    cost: float | None
    branch: str | None
    metadata: dict[str, Any]


__all__ = ["AgentRunRecord", "WorktreeRecord"]
