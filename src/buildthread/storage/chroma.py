"""Chroma-based session journal."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import (
    SESSION_ENDED,
    SESSION_EVENTS,
    SESSION_REAPED,
    SESSION_STARTED,
    SessionRecord,
)

_RECORD_FIELDS = {
    "session_id",
    "thread_id",
    "sandbox_id",
    "backend",
    "branch",
    "pr_number",
    "pr_url",
    "status",
    "timestamp",
}


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Minimal Chroma collection API used by the journal."""

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
    """Minimal Chroma client API used by the journal."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """A stored journal event."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


class ChromaStore:
    """Persist build session lifecycle events via ChromaDB.

    The journal lets a restarted bot enumerate sessions whose sandboxes may
    still exist remotely.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "build_sessions",
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
            raise ChromaUnavailableError(
                "chromadb package is not installed; install buildthread with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
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
                ChromaEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
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
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            # chroma rejects None metadata values
            record_metadata.update({k: v for k, v in metadata.items() if v is not None})

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id}, limit=limit)
        return self._convert_result(result)

    def record_session(
        self,
        *,
        session_id: str,
        event_type: str,
        thread_id: int,
        sandbox_id: str,
        backend: str,
        branch: str,
        pr_number: int,
        pr_url: str,
        status: str,
        metadata: dict[str, Any] | None = None,
    ) -> SessionRecord:
        if event_type not in SESSION_EVENTS:
            raise ValueError(f"Unknown session event type: {event_type}")

        payload = {
            "session_id": session_id,
            "thread_id": thread_id,
            "sandbox_id": sandbox_id,
            "backend": backend,
            "branch": branch,
            "pr_number": pr_number,
            "pr_url": pr_url,
            "status": status,
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            session_id=session_id,
            event_type=event_type,
            body=payload,
            metadata={"sandbox_id": sandbox_id, "status": status},
        )

        return SessionRecord(
            session_id=session_id,
            event_type=event_type,
            thread_id=thread_id,
            sandbox_id=sandbox_id,
            backend=backend,
            branch=branch,
            pr_number=pr_number,
            pr_url=pr_url,
            status=status,
            recorded_at=event.timestamp,
            metadata=metadata or {},
        )

    def list_session_records(self, event_type: str | None = None) -> list[SessionRecord]:
        events = self.search_events(filters={"event_type": event_type} if event_type else None)
        records: list[SessionRecord] = []
        for event in events:
            if event.event_type not in SESSION_EVENTS:
                continue
            doc = json.loads(event.document)
            records.append(
                SessionRecord(
                    session_id=doc["session_id"],
                    event_type=event.event_type,
                    thread_id=int(doc.get("thread_id", 0)),
                    sandbox_id=doc.get("sandbox_id", ""),
                    backend=doc.get("backend", ""),
                    branch=doc.get("branch", ""),
                    pr_number=int(doc.get("pr_number", 0)),
                    pr_url=doc.get("pr_url", ""),
                    status=doc.get("status", "unknown"),
                    recorded_at=event.timestamp,
                    metadata={k: v for k, v in doc.items() if k not in _RECORD_FIELDS},
                )
            )
        return records

    def open_sessions(self) -> list[SessionRecord]:
        """Sessions that were started but never ended or reaped."""

        started: dict[str, SessionRecord] = {}
        closed: set[str] = set()
        for record in self.list_session_records():
            if record.event_type == SESSION_STARTED:
                started[record.session_id] = record
            elif record.event_type in (SESSION_ENDED, SESSION_REAPED):
                closed.add(record.session_id)
        return [record for session_id, record in started.items() if session_id not in closed]

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=filters, limit=limit)
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


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
