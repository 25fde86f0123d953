"""Utility helpers for the agent runner."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for agent subprocesses.

    The orchestrator's own virtualenv must not leak into the project the agent
    works on, otherwise the agent's test and lint commands resolve the wrong
    interpreter.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters for one-line display."""

    return text if len(text) <= limit else text[:limit]
