"""Terminal progress lines for the sequential and parallel loops."""

from __future__ import annotations

import sys
from typing import Mapping, TextIO

SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
SPINNER_INTERVAL = 0.12
TITLE_WIDTH = 40


def format_elapsed(seconds: float) -> str:
    total = max(int(seconds), 0)
    return f"{total // 60:02d}:{total % 60:02d}"


def format_step_line(frame: int, step: str, title: str, elapsed: float) -> str:
    spinner = SPINNER_FRAMES[frame % len(SPINNER_FRAMES)]
    short = title if len(title) <= TITLE_WIDTH else title[: TITLE_WIDTH - 3] + "..."
    return f"{spinner} {step} │ {short} [{format_elapsed(elapsed)}]"


def format_batch_line(counts: Mapping[str, int], elapsed: float) -> str:
    return (
        f"Agents: {counts.get('setting_up', 0)} setup | "
        f"{counts.get('running', 0)} running | "
        f"{counts.get('done', 0)} done | "
        f"{counts.get('failed', 0)} failed | "
        f"{format_elapsed(elapsed)}"
    )


class ProgressDisplay:
    """Single rewritten status line; silent when the stream is not a terminal."""

    def __init__(self, stream: TextIO | None = None, *, enabled: bool | None = None) -> None:
        self.stream = stream or sys.stderr
        if enabled is None:
            enabled = bool(getattr(self.stream, "isatty", lambda: False)())
        self.enabled = enabled

    def render(self, text: str) -> None:
        if not self.enabled:
            return
        self.stream.write(f"\r\x1b[K{text}")
        self.stream.flush()

    def clear(self) -> None:
        if not self.enabled:
            return
        self.stream.write("\r\x1b[K")
        self.stream.flush()


__all__ = [
    "SPINNER_INTERVAL",
    "ProgressDisplay",
    "format_batch_line",
    "format_elapsed",
    "format_step_line",
]
