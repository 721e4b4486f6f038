"""Chroma-backed audit log of sandbox session activity.

The log is write-mostly: session state is never rebuilt from it. It answers
"what happened in this session" after the fact.
"""

from __future__ import annotations

import itertools
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

AUDIT_COLLECTION = "sandbox_sessions"


class ChromaUnavailableError(RuntimeError):
    """The audit collection could not be opened."""


class AuditCollection(Protocol):
    """The two collection calls the audit log relies on."""

    def add(self, *, documents: list[str], metadatas: list[dict[str, Any]], ids: list[str]) -> None:
        ...

    def get(self, *, where: dict[str, Any] | None = None) -> Mapping[str, list[Any]]:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """One recorded session event."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @property
    def sequence(self) -> int:
        return int(self.metadata.get("sequence", 0))

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.id,
            "session_id": self.session_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "document": self.document,
            "metadata": self.metadata,
        }


def _scalar_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    # Chroma only stores str/int/float/bool metadata values.
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = json.dumps(value, default=str)
    return cleaned


def _open_persistent_collection(path: Path, name: str) -> AuditCollection:
    try:
        import chromadb
    except ImportError as exc:  # pragma: no cover - depends on environment
        raise ChromaUnavailableError(
            "chromadb package is not installed; install sandbox-mcp with the persistence extra"
        ) from exc

    try:
        client = chromadb.PersistentClient(path=str(path))
        return client.get_or_create_collection(name)
    except Exception as exc:  # pragma: no cover - depends on environment
        raise ChromaUnavailableError(f"Cannot open Chroma store at {path}: {exc}") from exc


class ChromaStore:
    """Append session events to a Chroma collection and read them back in order."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = AUDIT_COLLECTION,
        client_factory: Callable[[], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: AuditCollection | None = None
        self._sequence = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def collection(self) -> AuditCollection:
        """The audit collection, opened on first use."""

        if self._collection is None:
            if self._client_factory is None:
                self._collection = _open_persistent_collection(self._path, self._collection_name)
            else:
                self._collection = self._client_factory().get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Open the collection, raising :class:`ChromaUnavailableError` on failure."""

        return self.collection is not None

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChromaEvent:
        """Append one event. ``body`` is stored as the document, JSON-encoded unless a string."""

        timestamp = self._clock()
        document = body if isinstance(body, str) else json.dumps(body, default=str)
        stored = _scalar_metadata(metadata or {})
        stored.update(
            session_id=session_id,
            event_type=event_type,
            timestamp=timestamp.isoformat(),
            sequence=next(self._sequence),
        )
        event_id = f"{session_id}:{uuid.uuid4().hex}"

        self.collection.add(documents=[document], metadatas=[stored], ids=[event_id])
        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=stored,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        """Events of one session, oldest first; ``limit`` keeps the most recent ones."""

        events = self._query({"session_id": session_id})
        return events[-limit:] if limit else events

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Events matching exact metadata ``filters`` and a case-insensitive substring ``query``."""

        events = self._query(filters)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    def _query(self, where: dict[str, Any] | None) -> list[ChromaEvent]:
        result = self.collection.get(where=where or None)
        events = [
            ChromaEvent(
                id=event_id,
                session_id=str(metadata.get("session_id", "")),
                event_type=str(metadata.get("event_type", "")),
                document=document,
                metadata=dict(metadata),
                timestamp=self._parse_timestamp(metadata.get("timestamp")),
            )
            for event_id, document, metadata in zip(
                result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
            )
        ]
        events.sort(key=lambda event: (event.timestamp, event.sequence))
        return events

    def _parse_timestamp(self, raw: Any) -> datetime:
        if isinstance(raw, str):
            try:
                return datetime.fromisoformat(raw)
            except ValueError:
                pass
        return self._clock()


__all__ = ["AUDIT_COLLECTION", "ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
