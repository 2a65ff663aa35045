"""Correlate agent events with planned tasks and advance task status."""

from __future__ import annotations

import json
import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Literal

from ..storage import ChromaStore, TaskRecord
from .events import (
    AgentEvent,
    TaskCreateInput,
    TaskListInput,
    TaskUpdateInput,
    ToolCategory,
    ToolInput,
    UnrecognizedToolInput,
    KEYWORD_LIMIT,
    TASK_TOOLS,
    decode_tool_input,
)
from .similarity import combined_similarity, tokenize
from .status import TaskStatus, can_advance, parse_status

if TYPE_CHECKING:
    from ..broadcast import BroadcastManager
    from ..routing import ProjectRouter

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.6

TAG_WEIGHT = 0.5
FILENAME_WEIGHT = 0.3
KEYWORD_WEIGHT = 0.4
DESCRIPTION_FACTOR = 0.8
ACTIVE_FORM_FACTOR = 0.9
CATEGORY_BONUS = 0.15
IMPLEMENTATION_BONUS = 0.05
CREATE_TAG_BONUS = 0.15

COMPLETED_HOOK = "PostToolUse"

CATEGORY_VERBS: dict[ToolCategory, tuple[str, ...]] = {
    ToolCategory.IMPLEMENTATION: (
        "implement", "build", "create", "add", "write", "refactor", "develop", "integrate", "fix", "update",
    ),
    ToolCategory.RESEARCH: ("research", "investigate", "analyze", "analyse", "review", "explore", "audit", "spike"),
    ToolCategory.COMMAND: ("test", "deploy", "ci", "run", "build", "release", "migrate", "lint", "verify"),
    ToolCategory.TASK: ("plan", "coordinate", "delegate", "organize"),
}

SUCCESS_MARKERS = re.compile(
    r"tests?\s+passed"
    r"|all\s+tests\s+pass"
    r"|\b\d+\s+passing\b"
    r"|(?<!\d)0\s+failed"
    r"|(?<!\d)0\s+failures"
    r"|build\s+succeeded"
    r"|build\s+successful"
    r"|compiled\s+successfully",
    re.IGNORECASE,
)

_EXTERNAL_ID_IN_TEXT = re.compile(r"\b(?:task|id)\b[\s:#\"']*([A-Za-z0-9-]*\d[A-Za-z0-9-]*)", re.IGNORECASE)
_TASK_LIST_BRACKET = re.compile(r"\[(\w+)\]\s+(.+?)(?:\s*\(owner:\s*(.+?)\))?$")
_TASK_LIST_NUMBERED = re.compile(r"^\d+\.\s+(.+?)\s*[-|]\s*(\w+)(?:\s*[-|]\s*(.+))?$")
_PRIORITIES = {"critical", "high", "medium", "low"}


@dataclass(slots=True)
class CorrelationMatch:
    event_id: str
    task_id: str
    confidence: float
    reason: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "taskId": self.task_id,
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass(slots=True)
class ScoredTask:
    """A candidate task with the weighted contribution of every fired signal."""

    task: TaskRecord
    score: float
    signals: dict[str, float] = field(default_factory=dict)

    @property
    def reason(self) -> str:
        parts = []
        for name, value in self.signals.items():
            sign = "+" if name == "category" else ""
            parts.append(f"{name}:{sign}{value * 100:.0f}%")
        return ", ".join(parts) or "no signals"


@dataclass(slots=True)
class CorrelationOutcome:
    status: Literal["matched", "no_match", "failed"]
    event_id: str
    match: CorrelationMatch | None = None
    detail: str = ""

    @classmethod
    def matched(cls, match: CorrelationMatch, detail: str = "") -> "CorrelationOutcome":
        return cls(status="matched", event_id=match.event_id, match=match, detail=detail)

    @classmethod
    def no_match(cls, event_id: str, detail: str) -> "CorrelationOutcome":
        return cls(status="no_match", event_id=event_id, detail=detail)

    @classmethod
    def failed(cls, event_id: str, detail: str) -> "CorrelationOutcome":
        return cls(status="failed", event_id=event_id, detail=detail)


def path_segments(file_path: str) -> list[str]:
    """Lower-cased path segments with their extensions removed."""

    segments = []
    for segment in re.split(r"[\\/]+", file_path.lower()):
        if not segment:
            continue
        stem = posixpath.splitext(segment)[0]
        segments.append(stem or segment)
    return segments


def infer_status(event: AgentEvent) -> TaskStatus | None:
    """Propose the status a task should reach because of ``event``."""

    category = event.category
    if category in (ToolCategory.IMPLEMENTATION, ToolCategory.RESEARCH):
        return TaskStatus.IN_PROGRESS
    if category == ToolCategory.COMMAND:
        if SUCCESS_MARKERS.search(event.output or ""):
            return TaskStatus.COMPLETED
        return TaskStatus.IN_PROGRESS
    return None


def category_bonus(category: ToolCategory, title: str) -> float:
    verbs = CATEGORY_VERBS.get(category, ())
    for token in tokenize(title):
        for verb in verbs:
            if token == verb or (len(verb) >= 4 and token.startswith(verb)):
                return CATEGORY_BONUS
    if category == ToolCategory.IMPLEMENTATION:
        return IMPLEMENTATION_BONUS
    return 0.0


def parse_task_list(output: str | None) -> list[dict[str, Any]]:
    """Parse a TaskList tool result into ``{id, subject, status, owner}`` dicts."""

    if not output:
        return []
    try:
        parsed = json.loads(output)
    except (TypeError, ValueError):
        parsed = None

    if parsed is not None:
        if isinstance(parsed, dict):
            parsed = parsed.get("tasks") or parsed.get("result") or parsed.get("data")
        if not isinstance(parsed, list):
            return []
        entries = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            entries.append(
                {
                    "id": str(item["id"]) if item.get("id") is not None else None,
                    "subject": item.get("subject") if isinstance(item.get("subject"), str) else None,
                    "status": item.get("status") if isinstance(item.get("status"), str) else None,
                    "owner": item.get("owner") if isinstance(item.get("owner"), str) else None,
                }
            )
        return entries

    entries = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        bracket = _TASK_LIST_BRACKET.match(line)
        if bracket:
            entries.append(
                {"id": None, "status": bracket.group(1), "subject": bracket.group(2).strip(), "owner": bracket.group(3)}
            )
            continue
        numbered = _TASK_LIST_NUMBERED.match(line)
        if numbered:
            entries.append(
                {
                    "id": None,
                    "subject": numbered.group(1).strip(),
                    "status": numbered.group(2),
                    "owner": numbered.group(3).strip() if numbered.group(3) else None,
                }
            )
    return entries


def _tag_overlap(input_tags: Iterable[str], task_tags: Iterable[str]) -> float:
    wanted = [tag.lower() for tag in input_tags if tag.strip()]
    known = [tag.lower() for tag in task_tags if tag.strip()]
    if not wanted or not known:
        return 0.0
    hits = sum(
        1
        for tag in wanted
        if any(tag == other or tag in other or other in tag for other in known)
    )
    return hits / max(len(wanted), len(known))


def _activity_type(status: TaskStatus | None, owner: str | None) -> str:
    if status == TaskStatus.COMPLETED:
        return "task_completed"
    if status == TaskStatus.IN_PROGRESS:
        return "task_started"
    if owner:
        return "agent_assigned"
    return "manual_update"


class CorrelationEngine:
    """Match one agent event at a time against open tasks.

    Task-management tools (``TaskCreate``, ``TaskUpdate``, ``TaskList``) are
    matched explicitly by external id or subject. Every other completed tool
    call is scored against open tasks using file path, file name, free-text
    keywords and the tool's category; a winner at or above the confidence
    threshold may move its task forward.
    """

    def __init__(
        self,
        store: ChromaStore,
        *,
        broadcaster: "BroadcastManager | None" = None,
        router: "ProjectRouter | None" = None,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._router = router
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def correlate(self, event: AgentEvent) -> CorrelationOutcome:
        """Correlate ``event``; never raises."""

        try:
            return self._correlate(event)
        except Exception as exc:
            return CorrelationOutcome.failed(event.id, f"{type(exc).__name__}: {exc}")

    def _correlate(self, event: AgentEvent) -> CorrelationOutcome:
        if event.hook_type != COMPLETED_HOOK:
            return CorrelationOutcome.no_match(event.id, f"hook {event.hook_type} is not a completed tool call")
        if not event.tool or event.tool == "unknown":
            return CorrelationOutcome.no_match(event.id, "event has no tool")

        tool_input = decode_tool_input(event)
        if event.tool in TASK_TOOLS:
            return self._correlate_task_tool(event, tool_input)
        return self._correlate_general(event, tool_input)

    # -- scope ------------------------------------------------------------

    def candidate_tasks(self, event: AgentEvent) -> list[TaskRecord]:
        """Open tasks in the session's bound project, or in every project."""

        project_id = self._router.project_for_session(event.session_id) if self._router else None
        tasks = self._store.list_tasks(project_id) if project_id else self._store.list_tasks()
        return [task for task in tasks if task.is_open]

    # -- path A: task-management tools -------------------------------------

    def _correlate_task_tool(self, event: AgentEvent, tool_input: ToolInput) -> CorrelationOutcome:
        if isinstance(tool_input, TaskCreateInput):
            return self._handle_task_create(event, tool_input)
        if isinstance(tool_input, TaskUpdateInput):
            return self._handle_task_update(event, tool_input)
        if isinstance(tool_input, TaskListInput) or event.tool == "TaskList":
            return self._handle_task_list(event)
        if isinstance(tool_input, UnrecognizedToolInput) and event.tool != "TaskGet":
            return CorrelationOutcome.no_match(event.id, f"malformed {event.tool} input")
        return CorrelationOutcome.no_match(event.id, f"{event.tool} carries no task change")

    def _handle_task_create(self, event: AgentEvent, tool_input: TaskCreateInput) -> CorrelationOutcome:
        subject = tool_input.subject.strip()
        if not subject:
            return CorrelationOutcome.no_match(event.id, "TaskCreate without subject")

        best: ScoredTask | None = None
        for task in self.candidate_tasks(event):
            signals: dict[str, float] = {}
            title_score = combined_similarity(subject, task.title)
            signals["title"] = title_score
            if tool_input.description and task.description:
                signals["desc"] = combined_similarity(tool_input.description, task.description) * DESCRIPTION_FACTOR
            if tool_input.active_form:
                signals["activeForm"] = combined_similarity(tool_input.active_form, task.title) * ACTIVE_FORM_FACTOR
            tag_bonus = _tag_overlap(tool_input.tags, task.tags) * CREATE_TAG_BONUS
            score = min(max(signals.values()) + tag_bonus, 1.0)
            if tag_bonus:
                signals["tags"] = tag_bonus
            if best is None or score > best.score:
                best = ScoredTask(task=task, score=score, signals=signals)

        if best is None or best.score < self._threshold:
            self._audit(event, best.task.id if best else None, "task_create", best.score if best else 0.0, False,
                        f'TaskCreate "{subject}": below threshold')
            return CorrelationOutcome.no_match(event.id, f'no task resembles "{subject}"')

        external_id = self._extract_external_id(event, tool_input)
        priority = tool_input.priority if tool_input.priority in _PRIORITIES else None
        self._store.update_task(
            best.task.id,
            external_id=external_id,
            session_id=event.session_id,
            priority=priority,
        )
        self._audit(event, best.task.id, "task_create", best.score, True,
                    f'TaskCreate "{subject}" vs "{best.task.title}": {best.reason}')
        self._store.record_activity(
            task_id=best.task.id,
            event_id=event.id,
            session_id=event.session_id,
            agent_id=event.agent_id,
            activity_type="task_created",
            timestamp=event.timestamp,
            details=(
                f'Matched TaskCreate "{subject}" (confidence {best.score * 100:.0f}%, {best.reason}, '
                f"externalId {external_id or 'none'})"
            ),
        )
        match = CorrelationMatch(
            event_id=event.id,
            task_id=best.task.id,
            confidence=best.score,
            reason=f'TaskCreate match: "{subject}" ({best.reason})',
        )
        self._announce(match, event)
        return CorrelationOutcome.matched(match)

    @staticmethod
    def _extract_external_id(event: AgentEvent, tool_input: TaskCreateInput) -> str | None:
        if event.output:
            try:
                output = json.loads(event.output)
            except (TypeError, ValueError):
                found = _EXTERNAL_ID_IN_TEXT.search(event.output)
                if found:
                    return found.group(1)
            else:
                if isinstance(output, dict):
                    task = output.get("task") if isinstance(output.get("task"), dict) else output
                    for key in ("taskId", "id"):
                        if task.get(key) is not None:
                            return str(task[key])
        return tool_input.task_id or tool_input.id

    def _handle_task_update(self, event: AgentEvent, tool_input: TaskUpdateInput) -> CorrelationOutcome:
        external_id = tool_input.task_id.strip()
        if not external_id:
            return CorrelationOutcome.no_match(event.id, "TaskUpdate without taskId")

        task = self._store.find_task_by_external_id(external_id)
        confidence = 1.0
        method = f'externalId exact match "{external_id}"'
        link_external_id = False

        if task is None and tool_input.subject:
            best: ScoredTask | None = None
            for candidate in self.candidate_tasks(event):
                score = combined_similarity(tool_input.subject, candidate.title)
                if best is None or score > best.score:
                    best = ScoredTask(task=candidate, score=score, signals={"title": score})
            if best is not None and best.score >= self._threshold:
                task = best.task
                confidence = best.score
                method = f'subject similarity "{tool_input.subject}" ({best.score * 100:.0f}%)'
                link_external_id = True

        search_text = (tool_input.active_form or tool_input.description or "").strip()
        if task is None and search_text:
            best = None
            for candidate in self.candidate_tasks(event):
                title_score = combined_similarity(search_text, candidate.title)
                description_score = (
                    combined_similarity(search_text, candidate.description) * DESCRIPTION_FACTOR
                    if candidate.description
                    else 0.0
                )
                score = max(title_score, description_score)
                if best is None or score > best.score:
                    best = ScoredTask(
                        task=candidate,
                        score=score,
                        signals={"title": title_score, "description": description_score},
                    )
            if best is not None and best.score >= self._threshold:
                task = best.task
                confidence = best.score
                method = f'description similarity "{search_text[:80]}" ({best.score * 100:.0f}%)'
                link_external_id = True

        if task is None:
            self._audit(event, None, "task_update", 0.0, False, f'TaskUpdate "{external_id}": no task found')
            return CorrelationOutcome.no_match(event.id, f'no task linked to "{external_id}"')

        proposed = parse_status(tool_input.status)
        applied = proposed if proposed is not None and can_advance(task.status, proposed) else None
        owner = (tool_input.owner or "").strip() or None

        self._store.update_task(
            task.id,
            status=applied.value if applied else None,
            assigned_agent=owner,
            external_id=external_id if link_external_id else None,
            session_id=event.session_id if link_external_id else None,
        )
        self._audit(event, task.id, "task_update", confidence, True, f"TaskUpdate {method}")
        self._store.record_activity(
            task_id=task.id,
            event_id=event.id,
            session_id=event.session_id,
            agent_id=event.agent_id,
            activity_type=_activity_type(applied, owner),
            timestamp=event.timestamp,
            details=(
                f"TaskUpdate status={applied.value if applied else 'unchanged'}, "
                f"owner={owner or 'unchanged'} ({method})"
            ),
        )
        if applied is not None:
            logger.info(
                "Task status advanced",
                extra={"task_id": task.id, "from": task.status, "to": applied.value, "event_id": event.id},
            )

        match = CorrelationMatch(
            event_id=event.id,
            task_id=task.id,
            confidence=confidence,
            reason=f"TaskUpdate {method}",
        )
        self._announce(match, event)
        return CorrelationOutcome.matched(match)

    def _handle_task_list(self, event: AgentEvent) -> CorrelationOutcome:
        entries = parse_task_list(event.output)
        if not entries:
            return CorrelationOutcome.no_match(event.id, "TaskList output had no tasks")

        candidates = self.candidate_tasks(event)
        first_match: CorrelationMatch | None = None
        changed = 0
        for entry in entries:
            task: TaskRecord | None = None
            confidence = 0.0
            if entry["id"]:
                task = self._store.find_task_by_external_id(entry["id"])
                confidence = 1.0
            if task is None and entry["subject"]:
                best_score = 0.0
                for candidate in candidates:
                    score = combined_similarity(entry["subject"], candidate.title)
                    if score >= self._threshold and score > best_score:
                        task, best_score = candidate, score
                confidence = best_score
            if task is None:
                continue
            # earlier entries of this listing may already have moved the task
            task = self._store.get_task(task.id) or task

            proposed = parse_status(entry["status"])
            applied = proposed if proposed is not None and can_advance(task.status, proposed) else None
            owner = entry["owner"] if entry["owner"] and entry["owner"] != task.assigned_agent else None
            if applied is None and owner is None:
                continue

            self._store.update_task(task.id, status=applied.value if applied else None, assigned_agent=owner)
            self._store.record_activity(
                task_id=task.id,
                event_id=event.id,
                session_id=event.session_id,
                agent_id=event.agent_id,
                activity_type=_activity_type(applied, owner),
                timestamp=event.timestamp,
                details=(
                    f"TaskList sync: status={applied.value if applied else 'unchanged'}, "
                    f"owner={owner or 'unchanged'} (confidence {confidence * 100:.0f}%)"
                ),
            )
            self._audit(event, task.id, "task_list_sync", confidence, True,
                        f'TaskList "{entry["subject"] or entry["id"]}" -> "{task.title}"')
            if self._broadcaster is not None:
                self._broadcaster.broadcast(
                    "task_status_changed",
                    {
                        "taskId": task.id,
                        "oldStatus": task.status,
                        "newStatus": applied.value if applied else task.status,
                        "agent": owner or task.assigned_agent,
                        "source": "task_list_sync",
                    },
                    session_id=event.session_id,
                )
            changed += 1
            if first_match is None:
                first_match = CorrelationMatch(
                    event_id=event.id,
                    task_id=task.id,
                    confidence=confidence,
                    reason=f'TaskList sync "{entry["subject"] or entry["id"]}"',
                )

        if first_match is None:
            return CorrelationOutcome.no_match(event.id, "TaskList matched no task changes")
        return CorrelationOutcome.matched(first_match, detail=f"{changed} task(s) reconciled")

    # -- path B: general tool events ---------------------------------------

    @staticmethod
    def _keywords(event: AgentEvent, tool_input: ToolInput) -> list[str]:
        keywords = tool_input.keywords()
        if isinstance(tool_input, UnrecognizedToolInput):
            for key in ("subject", "command", "content", "input", "description", "prompt", "query"):
                value = tool_input.raw.get(key)
                if isinstance(value, str) and value.strip():
                    keywords.append(value[:KEYWORD_LIMIT])
        if not keywords and event.input:
            keywords.append(event.input[:KEYWORD_LIMIT])
        return keywords

    def score_task(
        self,
        task: TaskRecord,
        event: AgentEvent,
        *,
        file_path: str | None,
        keywords: list[str],
    ) -> ScoredTask:
        """Weighted sum of every signal ``event`` gives for ``task``, clamped to 1."""

        signals: dict[str, float] = {}

        if file_path:
            tags = [tag.strip().lower() for tag in task.tags if tag.strip()]
            if tags:
                segments = path_segments(file_path)
                hits = sum(1 for tag in tags if any(tag in segment for segment in segments))
                if hits:
                    signals["tags"] = TAG_WEIGHT * hits / len(tags)

            basename = posixpath.splitext(re.split(r"[\\/]", file_path)[-1])[0]
            if basename:
                similarity = combined_similarity(basename, task.title)
                if similarity > 0:
                    signals["filename"] = FILENAME_WEIGHT * similarity

        if keywords:
            best = 0.0
            for text in keywords:
                best = max(best, combined_similarity(text, task.title))
                if task.description:
                    best = max(best, combined_similarity(text, task.description) * DESCRIPTION_FACTOR)
            if best > 0:
                signals["keywords"] = KEYWORD_WEIGHT * best

        bonus = category_bonus(event.category, task.title)
        if bonus:
            signals["category"] = bonus

        return ScoredTask(task=task, score=min(sum(signals.values()), 1.0), signals=signals)

    def find_best_match(self, event: AgentEvent, tool_input: ToolInput | None = None) -> ScoredTask | None:
        """Best open task scoring at or above the threshold, or None."""

        tool_input = tool_input if tool_input is not None else decode_tool_input(event)
        file_path = event.file_path or getattr(tool_input, "file_path", None)
        keywords = self._keywords(event, tool_input)

        best: ScoredTask | None = None
        for task in self.candidate_tasks(event):
            scored = self.score_task(task, event, file_path=file_path, keywords=keywords)
            if scored.score >= self._threshold and (best is None or scored.score > best.score):
                best = scored
        return best

    def _correlate_general(self, event: AgentEvent, tool_input: ToolInput) -> CorrelationOutcome:
        best = self.find_best_match(event, tool_input)
        if best is None:
            return CorrelationOutcome.no_match(event.id, "no task above threshold")

        proposed = infer_status(event)
        current = self._store.get_task(best.task.id) or best.task
        if proposed is None or not can_advance(current.status, proposed):
            return CorrelationOutcome.no_match(
                event.id, f"matched {current.id} but no forward transition from {current.status}"
            )

        self._store.update_task(current.id, status=proposed.value, assigned_agent=event.agent_id)
        self._audit(event, current.id, "general_tool", best.score, True,
                    f'{event.tool} vs "{current.title}": {best.reason}')
        self._store.record_activity(
            task_id=current.id,
            event_id=event.id,
            session_id=event.session_id,
            agent_id=event.agent_id,
            activity_type=_activity_type(proposed, None),
            timestamp=event.timestamp,
            details=f"{event.tool} moved task to {proposed.value} ({best.reason})",
        )
        logger.info(
            "Task status advanced",
            extra={"task_id": current.id, "from": current.status, "to": proposed.value, "event_id": event.id},
        )

        match = CorrelationMatch(
            event_id=event.id,
            task_id=current.id,
            confidence=best.score,
            reason=best.reason,
        )
        self._announce(match, event)
        return CorrelationOutcome.matched(match)

    # -- side effects -------------------------------------------------------

    def _announce(self, match: CorrelationMatch, event: AgentEvent) -> None:
        if self._broadcaster is not None:
            self._broadcaster.broadcast("correlation_match", match.to_payload(), session_id=event.session_id)

    def _audit(
        self,
        event: AgentEvent,
        task_id: str | None,
        layer: str,
        score: float,
        matched: bool,
        reason: str,
    ) -> None:
        try:
            self._store.record_audit(
                event_id=event.id,
                task_id=task_id,
                session_id=event.session_id,
                agent_id=event.agent_id,
                layer=layer,
                score=score,
                matched=matched,
                reason=reason,
            )
        except Exception as exc:  # audit trail must not abort correlation
            logger.warning(
                "Failed to record correlation audit",
                extra={"event_id": event.id, "layer": layer, "error": str(exc)},
            )


__all__ = [
    "CorrelationEngine",
    "CorrelationMatch",
    "CorrelationOutcome",
    "ScoredTask",
    "category_bonus",
    "infer_status",
    "parse_task_list",
    "path_segments",
]
