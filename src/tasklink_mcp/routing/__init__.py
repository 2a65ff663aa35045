"""Session and project routing."""

from .router import ProjectRouter, normalize_directory

__all__ = ["ProjectRouter", "normalize_directory"]
