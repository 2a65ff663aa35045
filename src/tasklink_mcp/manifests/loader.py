"""Task manifest loading and import."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import yaml
from pydantic import ValidationError

from ..storage import ChromaStore, TaskRecord
from .models import ManifestTask, TaskManifest

if TYPE_CHECKING:
    from ..routing import ProjectRouter

logger = logging.getLogger(__name__)


class ManifestLoadError(RuntimeError):
    """Raised when one or more manifest files cannot be parsed."""


def _parse_manifest(path: Path) -> TaskManifest | None:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ManifestLoadError(f"Failed to parse YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ManifestLoadError(f"Failed to read {path}: {exc}") from exc

    if document is None:
        return None

    try:
        return TaskManifest.model_validate(document)
    except ValidationError as exc:
        raise ManifestLoadError(f"Manifest validation error in {path}: {exc}") from exc


class ManifestLoader:
    """Loads task manifests from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, TaskManifest]:
        """Load manifests from all configured search paths, keyed by project.

        Later search paths override earlier ones when projects collide.
        """

        if not self._search_paths:
            return {}

        manifests: dict[str, TaskManifest] = {}
        errors: list[str] = []

        for base in self._search_paths:
            files = [base] if base.is_file() else sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml"))
            for path in files:
                try:
                    manifest = _parse_manifest(path)
                except ManifestLoadError as exc:
                    errors.append(str(exc))
                    continue
                if manifest is not None:
                    manifests[manifest.project] = manifest

        if errors:
            raise ManifestLoadError("; ".join(errors))

        return manifests

    @staticmethod
    def load_file(path: Path) -> TaskManifest:
        """Parse a single manifest file."""

        manifest = _parse_manifest(Path(path))
        if manifest is None:
            raise ManifestLoadError(f"Manifest {path} is empty")
        return manifest


@dataclass(slots=True)
class ImportSummary:
    project_id: str
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "project_id": self.project_id,
            "created": list(self.created),
            "skipped": list(self.skipped),
            "directories": list(self.directories),
        }


def _task_record(project_id: str, task: ManifestTask) -> TaskRecord:
    return TaskRecord(
        id=task.id,
        project_id=project_id,
        title=task.title,
        description=task.description,
        status=task.status.value,
        priority=task.priority,
        complexity=task.complexity,
        tags=list(task.tags),
        depends_on=list(task.depends_on),
        blocked_by=list(task.blocked_by),
        sprint_id=task.sprint,
    )


def import_manifest(
    manifest: TaskManifest,
    store: ChromaStore,
    router: "ProjectRouter | None" = None,
) -> ImportSummary:
    """Create the manifest's tasks that are not stored yet and register its directories.

    Stored tasks are left untouched so progress recorded by correlation
    survives a re-import.
    """

    summary = ImportSummary(project_id=manifest.project)
    for task in manifest.tasks:
        if store.get_task(task.id) is not None:
            summary.skipped.append(task.id)
            continue
        store.upsert_task(_task_record(manifest.project, task))
        summary.created.append(task.id)

    if router is not None:
        for directory in manifest.working_directories:
            entry = router.register_directory(directory, manifest.project, manifest.planning_path)
            summary.directories.append(entry.working_directory)

    logger.info(
        "Imported task manifest",
        extra={
            "project_id": manifest.project,
            "created_count": len(summary.created),
            "skipped_count": len(summary.skipped),
        },
    )
    return summary


__all__ = ["ImportSummary", "ManifestLoadError", "ManifestLoader", "import_manifest"]
