from __future__ import annotations

import asyncio
import json
import logging

import pytest
from pydantic import ValidationError

from tasklink_mcp.broadcast import BroadcastManager
from tasklink_mcp.correlation import CorrelationEngine
from tasklink_mcp.pipeline import EventPipeline, HookPayload, extract_file_path, extract_tool_name, truncate
from tasklink_mcp.routing import ProjectRouter

from conftest import FIXED_NOW, seed_task


class RecordingHandle:
    def __init__(self) -> None:
        self.frames: list[str] = []

    def send(self, message: str) -> None:
        self.frames.append(message)

    def close(self) -> None:
        pass

    def on_close(self, callback) -> None:
        pass

    def named(self, event_name: str) -> list[dict]:
        payloads = []
        for frame in self.frames:
            name_line, data_line, *_ = frame.split("\n")
            if name_line == f"event: {event_name}":
                payloads.append(json.loads(data_line.removeprefix("data: ")))
        return payloads


def build_pipeline(store, *, max_payload_length: int = 50_000):
    router = ProjectRouter(store)
    broadcaster = BroadcastManager(project_sessions=router.sessions_of_project)
    engine = CorrelationEngine(store, broadcaster=broadcaster, router=router)
    pipeline = EventPipeline(
        store,
        router=router,
        broadcaster=broadcaster,
        engine=engine,
        max_payload_length=max_payload_length,
        clock=lambda: FIXED_NOW,
    )
    return pipeline, router, broadcaster


def test_truncate() -> None:
    assert truncate(None, 5) is None
    assert truncate("abc", 5) == "abc"
    assert truncate("abcdefgh", 5) == "abcde..."
    assert truncate({"a": 1}, 50) == '{"a": 1}'


def test_extractors() -> None:
    payload = HookPayload.model_validate(
        {"hook": "PostToolUse", "data": {"tool_name": "Write", "tool_input": {"filePath": "a/b.py"}}}
    )
    assert extract_tool_name(payload) == "Write"
    assert extract_file_path(payload) == "a/b.py"

    explicit = HookPayload.model_validate({"hook": "PostToolUse", "tool": "Read", "input": {"path": "docs"}})
    assert extract_tool_name(explicit) == "Read"
    assert extract_file_path(explicit) == "docs"


def test_hook_payload_requires_hook() -> None:
    with pytest.raises(ValidationError):
        HookPayload.model_validate({"hook": "  "})


def test_build_event_defaults_and_truncation(store) -> None:
    pipeline, _, _ = build_pipeline(store, max_payload_length=10)

    event = pipeline.build_event(
        {
            "hook": "PostToolUse",
            "data": {
                "tool_name": "Bash",
                "tool_input": {"command": "pytest -q tests/"},
                "tool_output": "12 passed in 0.4s",
                "error_message": "warning",
                "duration_ms": 31,
            },
        }
    )

    assert event.session_id == "default"
    assert event.agent_id == "main"
    assert event.timestamp == FIXED_NOW
    assert event.tool == "Bash"
    assert event.input == '{"command"...'
    assert event.output == "12 passed ..."
    assert event.error == "warning"
    assert event.duration_ms == 31.0
    assert event.metadata["tool_input"] == {"command": "pytest -q tests/"}


def test_ingest_persists_broadcasts_and_correlates(store) -> None:
    seed_task(store, "t-auth", "Refactor auth handler", tags=["auth"])
    pipeline, _, broadcaster = build_pipeline(store)
    handle = RecordingHandle()
    broadcaster.add_subscriber("viewer", handle, session_filter="sess-1")

    async def scenario():
        event = await pipeline.ingest(
            {
                "hook": "PostToolUse",
                "session_id": "sess-1",
                "agent_id": "agent-9",
                "tool": "Edit",
                "data": {"tool_input": {"file_path": "src/services/auth-handler.ts", "new_string": "x"}},
            }
        )
        # correlation has been scheduled, not run
        assert store.get_task("t-auth").status == "pending"
        assert pipeline.pending == 1
        await pipeline.drain()
        return event

    event = asyncio.run(scenario())

    stored = store.fetch_session_events("sess-1")
    assert [item.id for item in stored] == [event.id]
    assert stored[0].event_type == "PostToolUse"
    assert stored[0].metadata["file_path"] == "src/services/auth-handler.ts"

    assert handle.named("agent_event")[0]["id"] == event.id
    assert handle.named("correlation_match")[0]["taskId"] == "t-auth"
    task = store.get_task("t-auth")
    assert task.status == "in_progress"
    assert task.assigned_agent == "agent-9"
    assert [outcome.status for outcome in pipeline.outcomes] == ["matched"]
    broadcaster.shutdown()


def test_session_start_binds_session(store) -> None:
    pipeline, router, broadcaster = build_pipeline(store)
    router.register_directory("/work/alpha", "alpha")

    async def scenario():
        await pipeline.ingest(
            {"hook": "SessionStart", "session_id": "sess-a", "data": {"cwd": "/work/alpha/src"}}
        )
        await pipeline.ingest(
            {"hook": "SessionStart", "session_id": "sess-b", "data": {"working_directory": "/tmp/other"}}
        )
        await pipeline.drain()

    asyncio.run(scenario())

    assert router.project_for_session("sess-a") == "alpha"
    assert router.project_for_session("sess-b") is None
    assert [outcome.status for outcome in pipeline.outcomes] == ["no_match", "no_match"]
    broadcaster.shutdown()


def test_correlation_failure_does_not_affect_ingest(store, monkeypatch, caplog) -> None:
    pipeline, _, broadcaster = build_pipeline(store)

    def boom(*_args, **_kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(store, "list_tasks", boom)
    caplog.set_level(logging.WARNING)

    async def scenario():
        event = await pipeline.ingest(
            {"hook": "PostToolUse", "session_id": "s", "tool": "Edit", "data": {"tool_input": {"file_path": "a.py"}}}
        )
        await pipeline.drain()
        return event

    event = asyncio.run(scenario())

    assert event.tool == "Edit"
    assert pipeline.outcomes[-1].status == "failed"
    assert any("Correlation failed" in record.message for record in caplog.records)
    broadcaster.shutdown()


def test_binding_failure_does_not_affect_ingest(store, monkeypatch, caplog) -> None:
    pipeline, router, broadcaster = build_pipeline(store)
    router.register_directory("/work/alpha", "alpha")
    handle = RecordingHandle()
    broadcaster.add_subscriber("viewer", handle)

    def boom(*_args, **_kwargs):
        raise RuntimeError("store offline")

    monkeypatch.setattr(store, "get_session_binding", boom)
    caplog.set_level(logging.WARNING)

    async def scenario():
        event = await pipeline.ingest(
            {"hook": "SessionStart", "session_id": "sess-a", "data": {"working_directory": "/work/alpha"}}
        )
        await pipeline.drain()
        return event

    event = asyncio.run(scenario())

    assert [item.id for item in store.fetch_session_events("sess-a")] == [event.id]
    assert handle.named("agent_event")[0]["id"] == event.id
    assert any("Session binding failed" in record.message for record in caplog.records)
    broadcaster.shutdown()
