"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class TaskRecord:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    complexity: int | None = None
    tags: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    assigned_agent: str | None = None
    external_id: str | None = None
    session_id: str | None = None
    sprint_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status not in {"completed", "deferred"}

    def to_document(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat() if self.created_at else None
        payload["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return payload

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "TaskRecord":
        values = dict(doc)
        for key in ("created_at", "updated_at"):
            raw = values.get(key)
            values[key] = datetime.fromisoformat(raw) if isinstance(raw, str) else None
        for key in ("tags", "depends_on", "blocked_by"):
            values[key] = [str(item) for item in values.get(key) or []]
        known = set(cls.__dataclass_fields__)
        return cls(**{key: value for key, value in values.items() if key in known})


@dataclass(slots=True)
class RegistryEntry:
    working_directory: str
    project_id: str
    planning_path: str | None
    registered_at: datetime


@dataclass(slots=True)
class SessionBinding:
    session_id: str
    project_id: str
    bound_at: datetime


@dataclass(slots=True)
class ActivityRecord:
    id: str
    task_id: str
    event_id: str
    session_id: str
    agent_id: str
    activity_type: str
    timestamp: datetime
    details: str


@dataclass(slots=True)
class AuditRecord:
    """One scored correlation attempt, kept for tuning the matcher."""

    id: str
    event_id: str
    task_id: str | None
    session_id: str
    agent_id: str
    layer: str
    score: float
    matched: bool
    reason: str
    timestamp: datetime


__all__ = [
    "ActivityRecord",
    "AuditRecord",
    "RegistryEntry",
    "SessionBinding",
    "TaskRecord",
]
