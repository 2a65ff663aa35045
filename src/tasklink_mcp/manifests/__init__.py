"""Task manifest models, loader and import."""

from .loader import ImportSummary, ManifestLoadError, ManifestLoader, import_manifest
from .models import ManifestTask, TaskManifest

__all__ = [
    "ImportSummary",
    "ManifestLoadError",
    "ManifestLoader",
    "ManifestTask",
    "TaskManifest",
    "import_manifest",
]
