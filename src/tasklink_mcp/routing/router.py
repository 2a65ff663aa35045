"""Route agent sessions to projects by working directory."""

from __future__ import annotations

import logging

from ..storage import ChromaStore, RegistryEntry, SessionBinding

logger = logging.getLogger(__name__)


def normalize_directory(directory: str) -> str:
    """Use forward slashes and drop trailing separators (the root stays ``/``)."""

    normalized = directory.strip().replace("\\", "/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    if len(normalized) > 1:
        normalized = normalized.rstrip("/") or "/"
    return normalized


class ProjectRouter:
    """Registry of working directories and write-once session bindings.

    A directory resolves to a project by exact registration first, then by the
    longest registered directory that contains it. A session is bound to the
    first project it resolves to and keeps that binding for its lifetime.
    """

    def __init__(self, store: ChromaStore) -> None:
        self._store = store

    def register_directory(
        self,
        working_directory: str,
        project_id: str,
        planning_path: str | None = None,
    ) -> RegistryEntry:
        directory = normalize_directory(working_directory)
        if not directory:
            raise ValueError("working_directory must not be empty")
        if not project_id.strip():
            raise ValueError("project_id must not be empty")
        entry = self._store.register_directory(
            working_directory=directory,
            project_id=project_id.strip(),
            planning_path=planning_path,
        )
        logger.info(
            "Registered working directory",
            extra={"working_directory": directory, "project_id": entry.project_id},
        )
        return entry

    def unregister_directory(self, working_directory: str) -> bool:
        return self._store.delete_registry_entry(normalize_directory(working_directory))

    def list_registry(self) -> list[RegistryEntry]:
        return self._store.list_registry()

    def lookup(self, working_directory: str) -> RegistryEntry | None:
        """Return the registry entry governing ``working_directory``."""

        directory = normalize_directory(working_directory)
        if not directory:
            return None
        exact = self._store.get_registry_entry(directory)
        if exact is not None:
            return exact
        candidates = self._store.find_registry_prefixes(directory)
        if not candidates:
            return None
        return max(candidates, key=lambda entry: len(entry.working_directory))

    def resolve_project(self, working_directory: str) -> str | None:
        entry = self.lookup(working_directory)
        return entry.project_id if entry else None

    def bind_session(self, session_id: str, working_directory: str) -> SessionBinding | None:
        """Bind ``session_id`` to the project of ``working_directory`` once.

        An existing binding is returned unchanged. None means the directory is
        not covered by any registration.
        """

        existing = self._store.get_session_binding(session_id)
        if existing is not None:
            return existing

        project_id = self.resolve_project(working_directory)
        if project_id is None:
            logger.debug(
                "No project registered for session directory",
                extra={"session_id": session_id, "working_directory": working_directory},
            )
            return None

        binding = self._store.insert_session_binding(session_id, project_id)
        logger.info("Bound session to project", extra={"session_id": session_id, "project_id": project_id})
        return binding

    def project_for_session(self, session_id: str) -> str | None:
        binding = self._store.get_session_binding(session_id)
        return binding.project_id if binding else None

    def sessions_of_project(self, project_id: str) -> list[str]:
        return [binding.session_id for binding in self._store.list_session_bindings(project_id)]


__all__ = ["ProjectRouter", "normalize_directory"]
