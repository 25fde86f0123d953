"""Live classification of what an agent is doing, for progress display only."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Iterable, Iterator


class Step(str, Enum):
    THINKING = "Thinking"
    READING = "Reading code"
    IMPLEMENTING = "Implementing"
    WRITING_TESTS = "Writing tests"
    TESTING = "Testing"
    LINTING = "Linting"
    UPDATING_TRACKER = "Updating tracker"
    STAGING = "Staging"
    COMMITTING = "Committing"


DEFAULT_TRACKER_FILES: tuple[str, ...] = ("prd.md", "tasks.yaml", "progress.txt")

_LINT_KEYWORDS = ("lint", "eslint", "biome", "prettier")
_TEST_RUNNER_KEYWORDS = ("vitest", "jest", "bun test", "npm test", "pytest", "go test")
_TEST_FILE_PATTERNS = (".test.", ".spec.", "__tests__", "_test.go")
_WRITE_TOOLS = {"write", "edit"}
_READ_TOOLS = {"read", "glob", "grep"}
_TOOL_KEYS = ("tool", "name", "tool_name")


def _tool_names(record: Any) -> Iterator[str]:
    """Tool names at the top level and inside nested ``tool_use`` blocks."""

    if isinstance(record, dict):
        for key in _TOOL_KEYS:
            value = record.get(key)
            if isinstance(value, str):
                yield value.lower()
        for value in record.values():
            if isinstance(value, (dict, list)):
                yield from _tool_names(value)
    elif isinstance(record, list):
        for item in record:
            yield from _tool_names(item)


def detect_step(line: str, tracker_files: Iterable[str] = DEFAULT_TRACKER_FILES) -> Step | None:
    """Classify one output line; ``None`` means "keep the current step"."""

    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        record = json.loads(stripped)
    except json.JSONDecodeError:
        return None

    content = json.dumps(record).lower()
    command = record.get("command") if isinstance(record, dict) else None
    command = command.lower() if isinstance(command, str) else ""

    if "git commit" in content or "git commit" in command:
        return Step.COMMITTING
    if "git add" in content or "git add" in command:
        return Step.STAGING
    if any(name.lower() in content for name in tracker_files):
        return Step.UPDATING_TRACKER
    if any(keyword in content for keyword in _LINT_KEYWORDS):
        return Step.LINTING
    if any(keyword in content for keyword in _TEST_RUNNER_KEYWORDS):
        return Step.TESTING
    if any(pattern in content for pattern in _TEST_FILE_PATTERNS):
        return Step.WRITING_TESTS

    tools = set(_tool_names(record))
    if tools & _WRITE_TOOLS:
        return Step.IMPLEMENTING
    if tools & _READ_TOOLS:
        return Step.READING
    return None


class StepTracker:
    """Holds the currently displayed step across streamed lines."""

    def __init__(self, tracker_files: Iterable[str] = DEFAULT_TRACKER_FILES) -> None:
        self.tracker_files = tuple(tracker_files)
        self.current = Step.THINKING

    def feed(self, line: str) -> Step:
        step = detect_step(line, self.tracker_files)
        if step is not None:
            self.current = step
        return self.current

    def reset(self) -> None:
        self.current = Step.THINKING


__all__ = ["DEFAULT_TRACKER_FILES", "Step", "StepTracker", "detect_step"]
