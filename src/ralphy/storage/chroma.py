"""Chroma-based run history."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import AgentRunRecord, WorktreeRecord


class HistoryUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Ralphy."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Ralphy."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class HistoryEvent:
    """Represents a stored event in Chroma."""

    id: str
    run_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _scalar_metadata(values: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata only accepts non-null scalars
    return {
        key: value
        for key, value in values.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaStore:
    """Persist orchestration events (agent runs, worktrees, summaries) via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "ralphy_runs",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise HistoryUnavailableError(
                "chromadb package is not installed"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[HistoryEvent]:
        events: list[HistoryEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                HistoryEvent(
                    id=event_id,
                    run_id=metadata.get("run_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        run_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> HistoryEvent:
        collection = self._ensure_collection()
        counter = self._counters[run_id] = self._counters[run_id] + 1
        event_id = f"{run_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata: dict[str, Any] = {
            "run_id": run_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(_scalar_metadata(metadata))

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return HistoryEvent(
            id=event_id,
            run_id=run_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_run_events(self, run_id: str, *, limit: int | None = None) -> list[HistoryEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"run_id": run_id}, limit=limit)
        return self._convert_result(result)

    def record_worktree(
        self,
        *,
        run_id: str,
        task_id: str,
        path: str,
        branch: str | None,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorktreeRecord:
        payload = {
            "task_id": task_id,
            "path": path,
            "branch": branch,
            "status": status,
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            run_id=run_id,
            event_type="worktree_update",
            body=payload,
            metadata={"task_id": task_id, "path": path, "status": status},
        )

        return WorktreeRecord(
            task_id=task_id,
            path=path,
            branch=branch,
            created_at=event.timestamp,
            status=status,
            metadata=metadata or {},
        )

    def list_worktrees(self, task_id: str | None = None) -> list[WorktreeRecord]:
        filters: dict[str, Any] = {"event_type": "worktree_update"}
        events = self.search_events(filters=filters)
        worktrees: list[WorktreeRecord] = []
        for event in events:
            doc = json.loads(event.document)
            if task_id and doc.get("task_id") != task_id:
                continue
            worktrees.append(
                WorktreeRecord(
                    task_id=doc["task_id"],
                    path=doc["path"],
                    branch=doc.get("branch"),
                    created_at=event.timestamp,
                    status=doc.get("status", "unknown"),
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k not in {"task_id", "path", "branch", "status"}
                    },
                )
            )
        return worktrees

    def record_agent_run(
        self,
        *,
        run_id: str,
        task_id: str,
        agent_index: int,
        status: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: float | None = None,
        branch: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentRunRecord:
        payload = {
            "task_id": task_id,
            "agent_index": agent_index,
            "status": status,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost": cost,
            "branch": branch,
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            run_id=run_id,
            event_type="agent_run",
            body=payload,
            metadata={"task_id": task_id, "agent_index": agent_index, "status": status},
        )

        return AgentRunRecord(
            run_id=run_id,
            task_id=task_id,
            agent_index=agent_index,
            recorded_at=event.timestamp,
            status=status,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            branch=branch,
            metadata=metadata or {},
        )

    def list_agent_runs(self, task_id: str | None = None) -> list[AgentRunRecord]:
        filters: dict[str, Any] = {"event_type": "agent_run"}
        runs: list[AgentRunRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            if task_id and doc.get("task_id") != task_id:
                continue
            runs.append(
                AgentRunRecord(
                    run_id=event.run_id,
                    task_id=doc["task_id"],
                    agent_index=int(doc.get("agent_index", 0)),
                    recorded_at=event.timestamp,
                    status=doc.get("status", "unknown"),
                    input_tokens=int(doc.get("input_tokens") or 0),
                    output_tokens=int(doc.get("output_tokens") or 0),
                    cost=doc.get("cost"),
                    branch=doc.get("branch"),
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k
                        not in {
                            "task_id",
                            "agent_index",
                            "status",
                            "input_tokens",
                            "output_tokens",
                            "cost",
                            "branch",
                        }
                    },
                )
            )
        return runs

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[HistoryEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=filters, limit=None if query else limit)
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = ["ChromaStore", "HistoryEvent", "HistoryUnavailableError"]
