"""Ingestion of raw hook payloads into agent events."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .broadcast import BroadcastManager
from .correlation import AgentEvent, CorrelationEngine, CorrelationOutcome
from .routing import ProjectRouter
from .storage import ChromaStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_LENGTH = 50_000
SESSION_START_HOOK = "SessionStart"


class HookPayload(BaseModel):
    """Raw event as posted by an agent hook."""

    model_config = ConfigDict(extra="ignore")

    hook: str
    timestamp: datetime | None = None
    session_id: str | None = None
    agent_id: str | None = None
    tool: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    input: Any = None

    @field_validator("hook")
    @classmethod
    def _require_hook(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("hook must not be empty")
        return normalized

    @field_validator("data", mode="before")
    @classmethod
    def _ensure_data(cls, value: Any):
        return value if isinstance(value, dict) else {}


def truncate(value: Any, limit: int) -> str | None:
    if value is None:
        return None
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def extract_tool_name(payload: HookPayload) -> str | None:
    if payload.tool:
        return payload.tool
    tool_name = payload.data.get("tool_name")
    return tool_name if isinstance(tool_name, str) and tool_name else None


def extract_file_path(payload: HookPayload) -> str | None:
    sources = [payload.data, payload.input if isinstance(payload.input, dict) else None]
    for source in sources:
        if not source:
            continue
        tool_input = source.get("tool_input", source)
        if not isinstance(tool_input, dict):
            continue
        for key in ("file_path", "path", "filePath"):
            value = tool_input.get(key)
            if isinstance(value, str):
                return value
    return None


def _first_string(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class EventPipeline:
    """Turn hook payloads into events: persist, route, broadcast, correlate.

    Correlation runs as a background task; :meth:`ingest` returns once the
    event is stored and broadcast.
    """

    def __init__(
        self,
        store: ChromaStore,
        *,
        router: ProjectRouter,
        broadcaster: BroadcastManager,
        engine: CorrelationEngine,
        max_payload_length: int = DEFAULT_MAX_PAYLOAD_LENGTH,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._router = router
        self._broadcaster = broadcaster
        self._engine = engine
        self._max_payload_length = max_payload_length
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: set[asyncio.Task] = set()
        self.outcomes: list[CorrelationOutcome] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    def build_event(self, payload: HookPayload | dict[str, Any]) -> AgentEvent:
        if not isinstance(payload, HookPayload):
            payload = HookPayload.model_validate(payload)

        data = payload.data
        raw_input = data.get("tool_input")
        if raw_input is None:
            raw_input = payload.input if payload.input is not None else (data or None)
        raw_output = data.get("tool_output", data.get("output"))
        duration = data.get("duration_ms", data.get("duration"))

        return AgentEvent(
            id=uuid4().hex,
            session_id=payload.session_id or "default",
            agent_id=payload.agent_id or "main",
            timestamp=payload.timestamp or self._clock(),
            hook_type=payload.hook,
            tool=extract_tool_name(payload),
            file_path=extract_file_path(payload),
            input=truncate(raw_input, self._max_payload_length),
            output=truncate(raw_output, self._max_payload_length),
            error=_first_string(data, "error_message", "error"),
            duration_ms=float(duration) if isinstance(duration, (int, float)) else None,
            metadata=data,
        )

    async def ingest(self, payload: HookPayload | dict[str, Any]) -> AgentEvent:
        event = self.build_event(payload)

        self._store.record_event(
            session_id=event.session_id,
            event_type=event.hook_type,
            body=event.model_dump(mode="json"),
            metadata={
                "agent_id": event.agent_id,
                "tool": event.tool,
                "file_path": event.file_path,
            },
            event_id=event.id,
            timestamp=event.timestamp,
        )

        if event.hook_type == SESSION_START_HOOK:
            directory = _first_string(event.metadata, "working_directory", "cwd")
            if directory:
                try:
                    self._router.bind_session(event.session_id, directory)
                except Exception as exc:  # binding failure must not fail ingestion
                    logger.warning(
                        "Session binding failed",
                        extra={
                            "event_id": event.id,
                            "session_id": event.session_id,
                            "working_directory": directory,
                            "error": str(exc),
                        },
                    )

        self._broadcaster.broadcast("agent_event", event.model_dump(mode="json"), session_id=event.session_id)

        task = asyncio.get_running_loop().create_task(self._correlate(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return event

    async def _correlate(self, event: AgentEvent) -> CorrelationOutcome:
        # let ingest return before correlation touches the store
        await asyncio.sleep(0)
        outcome = self._engine.correlate(event)
        self.outcomes.append(outcome)
        del self.outcomes[:-100]

        if outcome.status == "matched" and outcome.match is not None:
            logger.info(
                "Correlated event with task",
                extra={
                    "event_id": event.id,
                    "task_id": outcome.match.task_id,
                    "confidence": round(outcome.match.confidence, 3),
                },
            )
        elif outcome.status == "failed":
            logger.warning(
                "Correlation failed",
                extra={"event_id": event.id, "session_id": event.session_id, "error": outcome.detail},
            )
        else:
            logger.debug("No correlation", extra={"event_id": event.id, "detail": outcome.detail})
        return outcome

    async def drain(self) -> None:
        """Wait for every scheduled correlation to finish."""

        while self._pending:
            await asyncio.gather(*list(self._pending))


__all__ = ["EventPipeline", "HookPayload", "extract_file_path", "extract_tool_name", "truncate"]
