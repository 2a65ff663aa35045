"""Manifest models describing a project's planned tasks."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..correlation.status import TaskStatus

_PRIORITIES = {"critical", "high", "medium", "low"}


class ManifestTask(BaseModel):
    """One planned task as written in a manifest file."""

    id: str = Field(..., description="Stable identifier for the task.")
    title: str = Field(..., description="Short title matched against agent activity.")
    description: str = Field(default="", description="Longer description of the work.")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Initial status.")
    priority: str = Field(default="medium", description="One of critical, high, medium, low.")
    complexity: int | None = Field(default=None, ge=1, description="Optional relative size.")
    sprint: str | None = Field(default=None, description="Sprint the task belongs to.")
    tags: list[str] = Field(
        default_factory=list,
        description="Keywords compared with file path segments of agent edits.",
    )
    depends_on: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)

    @field_validator("id", "title")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task id and title must not be empty")
        return normalized

    @field_validator("priority")
    @classmethod
    def _normalize_priority(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _PRIORITIES:
            raise ValueError("Task priority must be one of critical, high, medium, low")
        return normalized

    @field_validator("tags", "depends_on", "blocked_by", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("Tags and dependencies must be sequences of strings")


class TaskManifest(BaseModel):
    """A project's task plan."""

    project: str = Field(..., description="Project identifier the tasks belong to.")
    working_directories: list[str] = Field(
        default_factory=list,
        description="Directories registered for the project when the manifest is imported.",
    )
    planning_path: str | None = Field(default=None, description="Where the plan lives on disk.")
    tasks: list[ManifestTask] = Field(default_factory=list)

    @field_validator("project")
    @classmethod
    def _normalize_project(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Manifest project must not be empty")
        return normalized

    @field_validator("working_directories", mode="before")
    @classmethod
    def _ensure_directories(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


__all__ = ["ManifestTask", "TaskManifest"]
