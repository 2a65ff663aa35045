"""Chroma-based persistence layer."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import ActivityRecord, AuditRecord, RegistryEntry, SessionBinding, TaskRecord


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by TaskLink."""

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

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...

    def delete(self, *, ids: Iterable[str]) -> None:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by TaskLink."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored agent event in Chroma."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _scalar_metadata(values: dict[str, Any]) -> dict[str, Any]:
    """Keep only values Chroma accepts as metadata."""

    return {
        key: value
        for key, value in values.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaStore:
    """Persist agent events, tasks, registry entries and bindings via ChromaDB.

    Each record kind lives in its own collection. The JSON document carries the
    full record; metadata only carries the scalar keys used for filtering.
    """

    KINDS = ("events", "tasks", "registry", "bindings", "activity", "audit")

    def __init__(
        self,
        path: Path,
        *,
        collection_prefix: str = "tasklink",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_prefix = collection_prefix
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collections: dict[str, CollectionProtocol] = {}
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install tasklink-mcp with its dependencies"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self, kind: str) -> CollectionProtocol:
        collection = self._collections.get(kind)
        if collection is None:
            client = self._client or self._client_factory()
            self._client = client
            collection = client.get_or_create_collection(f"{self._collection_prefix}_{kind}")
            self._collections[kind] = collection
        return collection

    def _next_sequence(self, key: str) -> int:
        self._counters[key] += 1
        return self._counters[key]

    @staticmethod
    def _documents(result: dict[str, list[Any]]) -> list[tuple[str, dict[str, Any], dict[str, Any]]]:
        rows = []
        for record_id, document, metadata in zip(
            result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
        ):
            rows.append((record_id, json.loads(document), metadata or {}))
        return rows

    def _put(self, kind: str, record_id: str, document: dict[str, Any], metadata: dict[str, Any]) -> None:
        self._ensure_collection(kind).upsert(
            documents=[json.dumps(document)],
            metadatas=[_scalar_metadata(metadata)],
            ids=[record_id],
        )

    def _get_one(self, kind: str, record_id: str) -> dict[str, Any] | None:
        result = self._ensure_collection(kind).get(ids=[record_id])
        rows = self._documents(result)
        return rows[0][1] if rows else None

    def _get_many(self, kind: str, where: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        result = self._ensure_collection(kind).get(where=where)
        rows = self._documents(result)
        rows.sort(key=lambda row: (row[2].get("timestamp", ""), row[2].get("sequence", 0)))
        return [document for _, document, _ in rows]

    def ping(self) -> bool:
        """Verify that the underlying collections can be obtained."""

        for kind in self.KINDS:
            self._ensure_collection(kind)
        return True

    # -- agent events -----------------------------------------------------

    def _convert_events(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
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
        events.sort(key=lambda event: event.metadata.get("sequence", 0))
        return events

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
        event_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection("events")
        counter = self._next_sequence(f"events::{session_id}")
        event_id = event_id or f"{session_id}:{uuid.uuid4().hex}"
        timestamp = timestamp or self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata = {
            "session_id": session_id,
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

        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection("events")
        result = collection.get(where={"session_id": session_id}, limit=limit)
        return self._convert_events(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection("events")
        where = None
        if filters:
            clauses = [{key: value} for key, value in filters.items()]
            where = clauses[0] if len(clauses) == 1 else {"$and": clauses}
        result = collection.get(where=where, limit=None if query else limit)
        events = self._convert_events(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    # -- tasks ------------------------------------------------------------

    def upsert_task(self, task: TaskRecord) -> TaskRecord:
        now = self._clock()
        if task.created_at is None:
            task.created_at = now
        task.updated_at = task.updated_at or now
        self._put(
            "tasks",
            task.id,
            task.to_document(),
            {
                "project_id": task.project_id,
                "status": task.status,
                "external_id": task.external_id,
                "timestamp": task.created_at.isoformat(),
            },
        )
        return task

    def get_task(self, task_id: str) -> TaskRecord | None:
        document = self._get_one("tasks", task_id)
        return TaskRecord.from_document(document) if document else None

    def list_tasks(self, project_id: str | None = None) -> list[TaskRecord]:
        where = {"project_id": project_id} if project_id else None
        return [TaskRecord.from_document(doc) for doc in self._get_many("tasks", where)]

    def find_task_by_external_id(self, external_id: str) -> TaskRecord | None:
        documents = self._get_many("tasks", {"external_id": external_id})
        return TaskRecord.from_document(documents[0]) if documents else None

    def update_task(
        self,
        task_id: str,
        *,
        status: str | None = None,
        assigned_agent: str | None = None,
        external_id: str | None = None,
        session_id: str | None = None,
        priority: str | None = None,
    ) -> TaskRecord | None:
        """Apply the non-None fields to a stored task and return the result."""

        task = self.get_task(task_id)
        if task is None:
            return None
        if status is not None:
            task.status = status
        if assigned_agent is not None:
            task.assigned_agent = assigned_agent
        if external_id is not None:
            task.external_id = external_id
        if session_id is not None:
            task.session_id = session_id
        if priority is not None:
            task.priority = priority
        task.updated_at = self._clock()
        return self.upsert_task(task)

    def list_projects(self) -> list[str]:
        projects = {task.project_id for task in self.list_tasks()}
        projects.update(entry.project_id for entry in self.list_registry())
        return sorted(projects)

    # -- directory registry -----------------------------------------------

    @staticmethod
    def _registry_from_document(doc: dict[str, Any]) -> RegistryEntry:
        return RegistryEntry(
            working_directory=doc["working_directory"],
            project_id=doc["project_id"],
            planning_path=doc.get("planning_path"),
            registered_at=datetime.fromisoformat(doc["registered_at"]),
        )

    def register_directory(
        self,
        *,
        working_directory: str,
        project_id: str,
        planning_path: str | None = None,
    ) -> RegistryEntry:
        entry = RegistryEntry(
            working_directory=working_directory,
            project_id=project_id,
            planning_path=planning_path,
            registered_at=self._clock(),
        )
        self._put(
            "registry",
            working_directory,
            {
                "working_directory": working_directory,
                "project_id": project_id,
                "planning_path": planning_path,
                "registered_at": entry.registered_at.isoformat(),
            },
            {"project_id": project_id, "timestamp": entry.registered_at.isoformat()},
        )
        return entry

    def get_registry_entry(self, working_directory: str) -> RegistryEntry | None:
        document = self._get_one("registry", working_directory)
        return self._registry_from_document(document) if document else None

    def find_registry_prefixes(self, working_directory: str) -> list[RegistryEntry]:
        """Return every entry whose directory contains ``working_directory``."""

        matches = []
        for entry in self.list_registry():
            base = entry.working_directory.rstrip("/")
            if working_directory == entry.working_directory or working_directory.startswith(base + "/"):
                matches.append(entry)
        return matches

    def list_registry(self) -> list[RegistryEntry]:
        return [self._registry_from_document(doc) for doc in self._get_many("registry")]

    def delete_registry_entry(self, working_directory: str) -> bool:
        if self.get_registry_entry(working_directory) is None:
            return False
        self._ensure_collection("registry").delete(ids=[working_directory])
        return True

    # -- session bindings -------------------------------------------------

    @staticmethod
    def _binding_from_document(doc: dict[str, Any]) -> SessionBinding:
        return SessionBinding(
            session_id=doc["session_id"],
            project_id=doc["project_id"],
            bound_at=datetime.fromisoformat(doc["bound_at"]),
        )

    def get_session_binding(self, session_id: str) -> SessionBinding | None:
        document = self._get_one("bindings", session_id)
        return self._binding_from_document(document) if document else None

    def insert_session_binding(self, session_id: str, project_id: str) -> SessionBinding:
        binding = SessionBinding(session_id=session_id, project_id=project_id, bound_at=self._clock())
        self._ensure_collection("bindings").add(
            documents=[
                json.dumps(
                    {
                        "session_id": session_id,
                        "project_id": project_id,
                        "bound_at": binding.bound_at.isoformat(),
                    }
                )
            ],
            metadatas=[{"project_id": project_id, "timestamp": binding.bound_at.isoformat()}],
            ids=[session_id],
        )
        return binding

    def list_session_bindings(self, project_id: str) -> list[SessionBinding]:
        return [
            self._binding_from_document(doc)
            for doc in self._get_many("bindings", {"project_id": project_id})
        ]

    # -- activity and audit trail -----------------------------------------

    def record_activity(
        self,
        *,
        task_id: str,
        event_id: str,
        session_id: str,
        agent_id: str,
        activity_type: str,
        details: str,
        timestamp: datetime | None = None,
    ) -> ActivityRecord:
        record = ActivityRecord(
            id=uuid.uuid4().hex,
            task_id=task_id,
            event_id=event_id,
            session_id=session_id,
            agent_id=agent_id,
            activity_type=activity_type,
            timestamp=timestamp or self._clock(),
            details=details,
        )
        document = {
            "id": record.id,
            "task_id": task_id,
            "event_id": event_id,
            "session_id": session_id,
            "agent_id": agent_id,
            "activity_type": activity_type,
            "timestamp": record.timestamp.isoformat(),
            "details": details,
        }
        self._put(
            "activity",
            record.id,
            document,
            {
                "task_id": task_id,
                "activity_type": activity_type,
                "timestamp": record.timestamp.isoformat(),
                "sequence": self._next_sequence("activity"),
            },
        )
        return record

    def list_activity(self, task_id: str | None = None, *, limit: int | None = None) -> list[ActivityRecord]:
        where = {"task_id": task_id} if task_id else None
        records = []
        for doc in self._get_many("activity", where):
            doc = dict(doc)
            doc["timestamp"] = datetime.fromisoformat(doc["timestamp"])
            records.append(ActivityRecord(**doc))
        return records[-limit:] if limit else records

    def record_audit(
        self,
        *,
        event_id: str,
        task_id: str | None,
        session_id: str,
        agent_id: str,
        layer: str,
        score: float,
        matched: bool,
        reason: str,
    ) -> AuditRecord:
        record = AuditRecord(
            id=uuid.uuid4().hex,
            event_id=event_id,
            task_id=task_id,
            session_id=session_id,
            agent_id=agent_id,
            layer=layer,
            score=round(score, 4),
            matched=matched,
            reason=reason,
            timestamp=self._clock(),
        )
        document = {
            "id": record.id,
            "event_id": event_id,
            "task_id": task_id,
            "session_id": session_id,
            "agent_id": agent_id,
            "layer": layer,
            "score": record.score,
            "matched": matched,
            "reason": reason,
            "timestamp": record.timestamp.isoformat(),
        }
        self._put(
            "audit",
            record.id,
            document,
            {
                "event_id": event_id,
                "task_id": task_id,
                "layer": layer,
                "matched": matched,
                "timestamp": record.timestamp.isoformat(),
                "sequence": self._next_sequence("audit"),
            },
        )
        return record

    def list_audit(
        self,
        *,
        event_id: str | None = None,
        task_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        where = {"event_id": event_id} if event_id else ({"task_id": task_id} if task_id else None)
        records = []
        for doc in self._get_many("audit", where):
            if task_id and doc.get("task_id") != task_id:
                continue
            doc = dict(doc)
            doc["timestamp"] = datetime.fromisoformat(doc["timestamp"])
            records.append(AuditRecord(**doc))
        return records[-limit:] if limit else records


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
