"""Task models shared by every task source."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class Task(BaseModel):
    """A unit of work pulled from a task source."""

    id: str = Field(..., description="Source-defined identity (line, file:line, index, issue number).")
    title: str = Field(..., description="One-line description handed to the agent.")
    completed: bool = Field(default=False, description="Whether the source records the task as done.")
    parallel_group: int | None = Field(
        default=None,
        description="Optional grouping hint carried by structured sources; informational only.",
    )
    body: str | None = Field(default=None, description="Longer description, when the source has one.")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        normalized = str(value).strip() if value is not None else ""
        if not normalized:
            raise ValueError("Task id must not be empty")
        return normalized

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task title must not be empty")
        return normalized


__all__ = ["Task"]
