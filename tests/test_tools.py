from __future__ import annotations

import asyncio
from pathlib import Path
import textwrap

import pytest

from tasklink_mcp.broadcast import BroadcastManager
from tasklink_mcp.correlation import CorrelationEngine
from tasklink_mcp.manifests import ManifestLoader
from tasklink_mcp.pipeline import EventPipeline
from tasklink_mcp.routing import ProjectRouter
from tasklink_mcp.tools import register_tools

from conftest import seed_task


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubContext:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, dict]] = []
        self.logger = self

    def info(self, message, extra=None):
        self.messages.append(("info", message, extra or {}))

    def warning(self, message, extra=None):
        self.messages.append(("warning", message, extra or {}))


def build(store, manifest_paths=()):
    server = StubServer()
    router = ProjectRouter(store)
    broadcaster = BroadcastManager(project_sessions=router.sessions_of_project)
    engine = CorrelationEngine(store, broadcaster=broadcaster, router=router)
    pipeline = EventPipeline(store, router=router, broadcaster=broadcaster, engine=engine)
    handles = register_tools(
        server,
        chroma_store=store,
        router=router,
        pipeline=pipeline,
        manifests=ManifestLoader(manifest_paths),
    )
    return server, handles, pipeline


def test_register_tools_exposes_every_tool(store) -> None:
    server, handles, _ = build(store)

    assert set(server._tools) == {
        "ingest_event",
        "register_directory",
        "unregister_directory",
        "resolve_directory",
        "list_registry",
        "import_tasks",
        "list_tasks",
        "task_activity",
        "correlation_audit",
    }
    assert handles.list_tasks.name == "list_tasks"


def test_directory_tools(store) -> None:
    _, handles, _ = build(store)
    context = StubContext()

    entry = handles.register_directory.fn("/work/mono/", "mono", context=context)
    handles.register_directory.fn("/work/mono/services/api", "api")

    assert entry["working_directory"] == "/work/mono"
    assert context.messages[0][1] == "Registered directory"

    resolved = handles.resolve_directory.fn("/work/mono/services/api/src")
    assert resolved == {
        "working_directory": "/work/mono/services/api/src",
        "project_id": "api",
        "matched_directory": "/work/mono/services/api",
    }
    assert [item["project_id"] for item in handles.list_registry.fn()] == ["mono", "api"]

    assert handles.unregister_directory.fn("/work/mono/services/api")["removed"] is True
    result = handles.unregister_directory.fn("/work/mono/services/api", context=context)
    assert result["removed"] is False
    assert context.messages[-1][0] == "warning"
    assert handles.resolve_directory.fn("/work/mono/services/api")["project_id"] == "mono"


def test_ingest_event_tool_schedules_correlation(store) -> None:
    seed_task(store, "t-auth", "Refactor auth handler", tags=["auth"])
    _, handles, pipeline = build(store)
    handles.register_directory.fn("/work/app", "proj")

    async def scenario():
        started = await handles.ingest_event.fn(
            hook="SessionStart", session_id="sess-1", data={"cwd": "/work/app"}
        )
        edited = await handles.ingest_event.fn(
            hook="PostToolUse",
            session_id="sess-1",
            tool="Edit",
            data={"tool_input": {"file_path": "/work/app/src/auth.py", "content": "def login(): ..."}},
            timestamp="2025-01-01T00:00:00+00:00",
        )
        await pipeline.drain()
        return started, edited

    started, edited = asyncio.run(scenario())

    assert started["project_id"] == "proj"
    assert edited["correlation"] == "scheduled"
    assert edited["file_path"] == "/work/app/src/auth.py"
    assert store.get_task("t-auth").status == "in_progress"

    activity = handles.task_activity.fn("t-auth")
    assert activity["task"]["task_id"] == "t-auth"
    assert [item["activity_type"] for item in activity["activity"]] == ["task_started"]

    audit = handles.correlation_audit.fn(event_id=edited["event_id"])
    assert audit[0]["matched"] is True
    assert audit[0]["layer"] == "general_tool"


def test_list_tasks_filters_by_status(store) -> None:
    seed_task(store, "t1", "One", project_id="web")
    seed_task(store, "t2", "Two", project_id="web", status="in_progress")
    seed_task(store, "t3", "Three", project_id="api")
    _, handles, _ = build(store)

    assert [task["task_id"] for task in handles.list_tasks.fn("web")] == ["t1", "t2"]
    assert [task["task_id"] for task in handles.list_tasks.fn(status="in-progress")] == ["t2"]
    with pytest.raises(ValueError):
        handles.list_tasks.fn(status="exploded")


def test_task_activity_validation(store) -> None:
    _, handles, _ = build(store)

    with pytest.raises(ValueError):
        handles.task_activity.fn("missing")
    with pytest.raises(ValueError):
        handles.correlation_audit.fn(limit=0)


def test_import_tasks_from_configured_paths(tmp_path: Path, store) -> None:
    (tmp_path / "web.yaml").write_text(
        textwrap.dedent(
            """
            project: web
            working_directories: [/work/web]
            tasks:
              - id: web-1
                title: Implement OAuth login
            """
        ),
        encoding="utf-8",
    )
    _, handles, _ = build(store, manifest_paths=[tmp_path])

    summaries = handles.import_tasks.fn()
    assert summaries == [
        {"project_id": "web", "created": ["web-1"], "skipped": [], "directories": ["/work/web"]}
    ]
    again = handles.import_tasks.fn(str(tmp_path / "web.yaml"))
    assert again[0]["skipped"] == ["web-1"]
    assert handles.resolve_directory.fn("/work/web/src")["project_id"] == "web"


def test_tools_require_storage() -> None:
    server = StubServer()
    handles = register_tools(server, chroma_store=None, router=None, pipeline=None, manifests=ManifestLoader())

    with pytest.raises(RuntimeError):
        handles.list_tasks.fn()
    with pytest.raises(RuntimeError):
        handles.list_registry.fn()
    with pytest.raises(RuntimeError):
        asyncio.run(handles.ingest_event.fn(hook="PostToolUse"))
