"""Run history persistence."""

from .chroma import ChromaStore, HistoryEvent, HistoryUnavailableError
from .models import AgentRunRecord, WorktreeRecord

__all__ = [
    "AgentRunRecord",
    "ChromaStore",
    "HistoryEvent",
    "HistoryUnavailableError",
    "WorktreeRecord",
]
