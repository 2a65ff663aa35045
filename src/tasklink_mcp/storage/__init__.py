"""Storage abstractions for TaskLink MCP."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import ActivityRecord, AuditRecord, RegistryEntry, SessionBinding, TaskRecord

__all__ = [
    "ActivityRecord",
    "AuditRecord",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "RegistryEntry",
    "SessionBinding",
    "TaskRecord",
]
