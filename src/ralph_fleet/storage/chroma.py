"""Chroma-based persistence layer."""

from __future__ import annotations

import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

logger = logging.getLogger(__name__)

_SESSION = "session"
_TASK = "task"
_CONFIG = "config"
_LOOP = "loop"
_CYCLE = "cycle"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by the fleet store."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def upsert(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def delete(self, *, ids: Iterable[str]) -> None:
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
    """Protocol for the minimal Chroma client API used by the fleet store."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """An appended cycle-metrics record as read back from Chroma."""

    id: str
    session_id: str
    kind: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    if not filters:
        return None
    if len(filters) == 1:
        return dict(filters)
    return {"$and": [{key: value} for key, value in filters.items()]}


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be non-null scalars.
    return {
        key: value
        for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaStateStore:
    """Key-value state image and cycle-metrics log backed by ChromaDB.

    Keyed records (sessions, tasks, config, loop state) are upserted under
    ``"<kind>::<key>"`` ids; cycle metrics are appended as events.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "ralph_fleet_state",
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
                "chromadb package is not installed; install ralph-fleet with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    # keyed records -----------------------------------------------------------------

    def _put(self, kind: str, key: str, payload: dict[str, Any], extra: dict[str, Any] | None = None) -> None:
        metadata = {
            "kind": kind,
            "key": key,
            "updated_at": self._clock().isoformat(),
        }
        if extra:
            metadata.update(_scalar_metadata(extra))
        try:
            self._ensure_collection().upsert(
                documents=[json.dumps(payload)],
                metadatas=[metadata],
                ids=[f"{kind}::{key}"],
            )
        except Exception as exc:
            logger.warning(
                "State write failed",
                extra={"kind": kind, "key": key, "error": str(exc)},
            )

    def _fetch(self, kind: str, key: str) -> dict[str, Any] | None:
        try:
            result = self._ensure_collection().get(ids=[f"{kind}::{key}"])
        except Exception as exc:
            logger.warning("State read failed", extra={"kind": kind, "key": key, "error": str(exc)})
            return None
        documents = result.get("documents") or []
        return json.loads(documents[0]) if documents else None

    def _fetch_all(self, kind: str) -> dict[str, dict[str, Any]]:
        try:
            result = self._ensure_collection().get(where={"kind": kind})
        except Exception as exc:
            logger.warning("State read failed", extra={"kind": kind, "error": str(exc)})
            return {}
        records: dict[str, dict[str, Any]] = {}
        for document, metadata in zip(result.get("documents", []), result.get("metadatas", [])):
            records[metadata.get("key", "")] = json.loads(document)
        return records

    def _drop(self, kind: str, key: str) -> None:
        try:
            self._ensure_collection().delete(ids=[f"{kind}::{key}"])
        except Exception as exc:
            logger.warning("State delete failed", extra={"kind": kind, "key": key, "error": str(exc)})

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        return self._fetch(_SESSION, session_id)

    def set_session(self, session_id: str, snapshot: dict[str, Any]) -> None:
        self._put(_SESSION, session_id, snapshot, {"status": snapshot.get("status")})

    def remove_session(self, session_id: str) -> None:
        self._drop(_SESSION, session_id)

    def list_sessions(self) -> dict[str, dict[str, Any]]:
        return self._fetch_all(_SESSION)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        return self._fetch(_TASK, task_id)

    def set_task(self, task_id: str, state: dict[str, Any]) -> None:
        self._put(_TASK, task_id, state, {"status": state.get("status")})

    def remove_task(self, task_id: str) -> None:
        self._drop(_TASK, task_id)

    def list_tasks(self) -> dict[str, dict[str, Any]]:
        return self._fetch_all(_TASK)

    def get_config(self) -> dict[str, Any]:
        return self._fetch(_CONFIG, "app") or {}

    def set_config(self, partial: dict[str, Any]) -> dict[str, Any]:
        merged = {**self.get_config(), **partial}
        self._put(_CONFIG, "app", merged)
        return merged

    def get_loop_state(self) -> dict[str, Any] | None:
        return self._fetch(_LOOP, "state")

    def set_loop_state(self, state: dict[str, Any]) -> None:
        self._put(_LOOP, "state", state, {"status": state.get("status")})

    # cycle log ---------------------------------------------------------------------

    def append_cycle_metrics(self, record: dict[str, Any]) -> None:
        session_id = record["session_id"]
        self._counters[session_id] += 1
        metadata = {
            "kind": _CYCLE,
            "session_id": session_id,
            "timestamp": self._clock().isoformat(),
            "sequence": self._counters[session_id],
        }
        metadata.update(
            _scalar_metadata({"outcome": record.get("outcome"), "cycle_number": record.get("cycle_number")})
        )
        try:
            self._ensure_collection().add(
                documents=[json.dumps(record)],
                metadatas=[metadata],
                ids=[f"{session_id}:{_CYCLE}:{uuid.uuid4().hex}"],
            )
        except Exception as exc:
            logger.warning(
                "Cycle metrics write failed",
                extra={"session_id": session_id, "error": str(exc)},
            )

    def list_cycle_metrics(self, session_id: str | None = None) -> list[dict[str, Any]]:
        filters: dict[str, Any] = {"kind": _CYCLE}
        if session_id:
            filters["session_id"] = session_id
        return [json.loads(event.document) for event in self.search_events(filters=filters)]

    def search_events(
        self,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Appended records matching ``filters``, oldest first."""

        found = self._ensure_collection().get(where=_where(filters), limit=limit)
        events = [
            ChromaEvent(
                id=record_id,
                session_id=metadata.get("session_id", ""),
                kind=metadata.get("kind", ""),
                document=document,
                metadata=metadata,
                timestamp=self._parse_timestamp(metadata.get("timestamp")),
            )
            for record_id, document, metadata in zip(
                found.get("ids", []), found.get("documents", []), found.get("metadatas", [])
            )
        ]
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def _parse_timestamp(self, raw: Any) -> datetime:
        return datetime.fromisoformat(raw) if isinstance(raw, str) else self._clock()


__all__ = ["ChromaEvent", "ChromaStateStore", "ChromaUnavailableError"]
