"""Task status ordering and the forward-only transition guard."""

from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    PLANNED = "planned"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    DEFERRED = "deferred"


STATUS_ORDER: tuple[TaskStatus, ...] = (
    TaskStatus.BACKLOG,
    TaskStatus.PLANNED,
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
    TaskStatus.IN_REVIEW,
    TaskStatus.COMPLETED,
)

# Status spellings agents use in task-tool payloads.
STATUS_ALIASES: dict[str, TaskStatus] = {
    "backlog": TaskStatus.BACKLOG,
    "planned": TaskStatus.PLANNED,
    "pending": TaskStatus.PENDING,
    "todo": TaskStatus.PENDING,
    "in_progress": TaskStatus.IN_PROGRESS,
    "in-progress": TaskStatus.IN_PROGRESS,
    "inprogress": TaskStatus.IN_PROGRESS,
    "in_review": TaskStatus.IN_REVIEW,
    "review": TaskStatus.IN_REVIEW,
    "completed": TaskStatus.COMPLETED,
    "complete": TaskStatus.COMPLETED,
    "done": TaskStatus.COMPLETED,
    "blocked": TaskStatus.BLOCKED,
    "deferred": TaskStatus.DEFERRED,
    "cancelled": TaskStatus.DEFERRED,
    "canceled": TaskStatus.DEFERRED,
}


def parse_status(value: str | None) -> TaskStatus | None:
    if not value:
        return None
    return STATUS_ALIASES.get(value.strip().lower())


def status_rank(status: str) -> int | None:
    """Position of ``status`` in the ordered progression, or None for side states."""

    try:
        return STATUS_ORDER.index(TaskStatus(status))
    except ValueError:
        return None


def can_advance(current: str, proposed: str) -> bool:
    """Return True when an automatic move from ``current`` to ``proposed`` is allowed.

    Automatic transitions only move strictly forward along the ordered
    progression, never leave ``blocked`` and never target a side state.
    """

    if current == TaskStatus.BLOCKED:
        return False
    proposed_rank = status_rank(proposed)
    if proposed_rank is None:
        return False
    current_rank = status_rank(current)
    if current_rank is None:
        # deferred or an unknown label: not part of the progression
        return False
    return proposed_rank > current_rank


__all__ = ["STATUS_ORDER", "TaskStatus", "can_advance", "parse_status", "status_rank"]
