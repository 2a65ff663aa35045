"""Tool registration for TaskLink MCP."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from ..correlation import parse_status
from ..manifests import ManifestLoader, import_manifest
from ..pipeline import EventPipeline
from ..routing import ProjectRouter, normalize_directory
from ..storage import ChromaStore, RegistryEntry, TaskRecord


@dataclass(slots=True)
class ToolHandles:
    ingest_event: Any
    register_directory: Any
    unregister_directory: Any
    resolve_directory: Any
    list_registry: Any
    import_tasks: Any
    list_tasks: Any
    task_activity: Any
    correlation_audit: Any


def _task_summary(task: TaskRecord) -> dict[str, Any]:
    payload = task.to_document()
    payload["task_id"] = payload.pop("id")
    return payload


def _registry_summary(entry: RegistryEntry) -> dict[str, Any]:
    return {
        "working_directory": entry.working_directory,
        "project_id": entry.project_id,
        "planning_path": entry.planning_path,
        "registered_at": entry.registered_at.isoformat(),
    }


def _record_summary(record: Any) -> dict[str, Any]:
    payload = asdict(record)
    payload["timestamp"] = record.timestamp.isoformat()
    return payload


def register_tools(
    server: FastMCP,
    *,
    chroma_store: ChromaStore | None,
    router: ProjectRouter | None,
    pipeline: EventPipeline | None,
    manifests: ManifestLoader,
) -> ToolHandles:
    """Register TaskLink's MCP tools on the server."""

    def _require_chroma() -> ChromaStore:
        if chroma_store is None:
            raise RuntimeError("Chroma store is unavailable; enable persistence before using this tool")
        return chroma_store

    def _require_router() -> ProjectRouter:
        if router is None:
            raise RuntimeError("Project routing requires the Chroma store")
        return router

    async def _ingest_event(
        hook: str,
        session_id: str | None = None,
        agent_id: str | None = None,
        tool: str | None = None,
        data: dict[str, Any] | None = None,
        input: Any = None,
        timestamp: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        if pipeline is None:
            raise RuntimeError("Event ingestion requires the Chroma store")

        event = await pipeline.ingest(
            {
                "hook": hook,
                "session_id": session_id,
                "agent_id": agent_id,
                "tool": tool,
                "data": data or {},
                "input": input,
                "timestamp": timestamp,
            }
        )
        project_id = router.project_for_session(event.session_id) if router else None

        _emit_log(
            context,
            "info",
            "Ingested agent event",
            extra={
                "event_id": event.id,
                "session_id": event.session_id,
                "hook": event.hook_type,
                "tool": event.tool,
            },
        )

        return {
            "event_id": event.id,
            "session_id": event.session_id,
            "agent_id": event.agent_id,
            "hook": event.hook_type,
            "tool": event.tool,
            "file_path": event.file_path,
            "project_id": project_id,
            "correlation": "scheduled",
        }

    tool_ingest = server.tool(
        name="ingest_event",
        description=(
            "Ingest one agent hook event (PreToolUse, PostToolUse, SessionStart, ...). "
            "The event is stored and broadcast, then correlated with planned tasks in the background."
        ),
    )(_ingest_event)

    def _register_directory(
        working_directory: str,
        project_id: str,
        planning_path: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        entry = _require_router().register_directory(working_directory, project_id, planning_path)
        _emit_log(
            context,
            "info",
            "Registered directory",
            extra={"working_directory": entry.working_directory, "project_id": entry.project_id},
        )
        return _registry_summary(entry)

    def _unregister_directory(working_directory: str, context: Context | None = None) -> dict[str, Any]:
        removed = _require_router().unregister_directory(working_directory)
        _emit_log(
            context,
            "info" if removed else "warning",
            "Unregistered directory" if removed else "Directory was not registered",
            extra={"working_directory": working_directory},
        )
        return {"working_directory": normalize_directory(working_directory), "removed": removed}

    def _resolve_directory(working_directory: str) -> dict[str, Any]:
        entry = _require_router().lookup(working_directory)
        return {
            "working_directory": normalize_directory(working_directory),
            "project_id": entry.project_id if entry else None,
            "matched_directory": entry.working_directory if entry else None,
        }

    def _list_registry() -> list[dict[str, Any]]:
        return [_registry_summary(entry) for entry in _require_router().list_registry()]

    tool_register = server.tool(
        name="register_directory",
        description="Map a working directory (and everything below it) to a project.",
    )(_register_directory)

    tool_unregister = server.tool(
        name="unregister_directory",
        description="Remove a working directory registration. Existing session bindings are kept.",
    )(_unregister_directory)

    tool_resolve = server.tool(
        name="resolve_directory",
        description="Report which project a working directory resolves to, using the longest registered prefix.",
    )(_resolve_directory)

    tool_list_registry = server.tool(
        name="list_registry",
        description="List every registered working directory with its project.",
    )(_list_registry)

    def _import_tasks(path: str | None = None, context: Context | None = None) -> list[dict[str, Any]]:
        store = _require_chroma()
        if path:
            loaded = [ManifestLoader.load_file(Path(path).expanduser())]
        else:
            loaded = list(manifests.load_all().values())

        summaries = [import_manifest(manifest, store, router).to_dict() for manifest in loaded]
        _emit_log(
            context,
            "info",
            "Imported task manifests",
            extra={
                "manifests": len(summaries),
                "created_count": sum(len(summary["created"]) for summary in summaries),
            },
        )
        return summaries

    def _list_tasks(project_id: str | None = None, status: str | None = None) -> list[dict[str, Any]]:
        tasks = _require_chroma().list_tasks(project_id)
        if status:
            wanted = parse_status(status)
            if wanted is None:
                raise ValueError(f"Unknown task status '{status}'")
            tasks = [task for task in tasks if task.status == wanted.value]
        return [_task_summary(task) for task in tasks]

    def _task_activity(task_id: str, limit: int = 20) -> dict[str, Any]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        store = _require_chroma()
        task = store.get_task(task_id)
        if task is None:
            raise ValueError(f"Unknown task '{task_id}'")
        return {
            "task": _task_summary(task),
            "activity": [_record_summary(record) for record in store.list_activity(task_id, limit=limit)],
        }

    def _correlation_audit(
        event_id: str | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        records = _require_chroma().list_audit(event_id=event_id, task_id=task_id, limit=limit)
        return [_record_summary(record) for record in records]

    tool_import = server.tool(
        name="import_tasks",
        description=(
            "Import task manifests (YAML) from the given file, or from the configured manifest "
            "paths. Tasks that already exist are left unchanged."
        ),
    )(_import_tasks)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List planned tasks, optionally filtered by project and status.",
    )(_list_tasks)

    tool_activity = server.tool(
        name="task_activity",
        description="Show a task with its most recent automatic status changes and assignments.",
    )(_task_activity)

    tool_audit = server.tool(
        name="correlation_audit",
        description="Show scored correlation attempts for an event or a task, newest last.",
    )(_correlation_audit)

    return ToolHandles(
        ingest_event=tool_ingest,
        register_directory=tool_register,
        unregister_directory=tool_unregister,
        resolve_directory=tool_resolve,
        list_registry=tool_list_registry,
        import_tasks=tool_import,
        list_tasks=tool_list_tasks,
        task_activity=tool_activity,
        correlation_audit=tool_audit,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
