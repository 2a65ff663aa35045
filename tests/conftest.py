from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from tasklink_mcp.storage import ChromaStore, TaskRecord

FIXED_NOW = datetime.fromisoformat("2025-01-01T00:00:00+00:00")


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def _index(self, record_id: str) -> int | None:
        for index, record in enumerate(self.records):
            if record.id == record_id:
                return index
        return None

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            if self._index(record_id) is not None:
                continue
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def upsert(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            record = _Record(document=document, metadata=dict(metadata), id=record_id)
            index = self._index(record_id)
            if index is None:
                self.records.append(record)
            else:
                self.records[index] = record

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if ids is not None:
            wanted = set(ids)
            filtered = [record for record in filtered if record.id in wanted]
        if where:
            clauses = where["$and"] if "$and" in where else [where]
            for key, value in (item for clause in clauses for item in clause.items()):
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }

    def delete(self, *, ids) -> None:  # type: ignore[override]
        wanted = set(ids)
        self.records = [record for record in self.records if record.id not in wanted]


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class TickingClock:
    """Clock that advances one second per call so stored records keep their order."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + timedelta(seconds=1)
        return value


def make_store(tmp_path: Path) -> ChromaStore:
    client = StubClient()
    return ChromaStore(tmp_path, client_factory=lambda: client, clock=TickingClock())


def seed_task(store: ChromaStore, task_id: str, title: str, **fields: Any) -> TaskRecord:
    fields.setdefault("project_id", "proj")
    return store.upsert_task(TaskRecord(id=task_id, title=title, **fields))


@pytest.fixture
def store(tmp_path: Path) -> ChromaStore:
    return make_store(tmp_path)
