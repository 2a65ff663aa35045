"""FastMCP server bootstrap for TaskLink."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from fastmcp import Context, FastMCP
from starlette.requests import Request
from starlette.responses import StreamingResponse

from . import __version__
from .broadcast import BroadcastManager, StreamSubscriber
from .config import TaskLinkSettings, get_settings
from .correlation import CorrelationEngine
from .manifests import ManifestLoadError, ManifestLoader, import_manifest
from .pipeline import EventPipeline
from .routing import ProjectRouter
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the TaskLink server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[TaskLinkSettings] = None,
    chroma_store: ChromaStore | None = None,
    broadcaster: BroadcastManager | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools, status resource and event stream."""

    settings = settings or get_settings()

    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection_prefix": "tasklink",
        "error": None,
    }

    if chroma_store is None:
        try:
            chroma_store = ChromaStore(settings.chroma_persist_path)
            chroma_store.ping()
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            chroma_store = None
    if chroma_store is not None:
        chroma_metadata["available"] = True

    broadcaster = broadcaster or BroadcastManager(heartbeat_interval=settings.heartbeat_interval)
    router: ProjectRouter | None = None
    engine: CorrelationEngine | None = None
    pipeline: EventPipeline | None = None
    if chroma_store is not None:
        router = ProjectRouter(chroma_store)
        broadcaster.set_project_session_resolver(router.sessions_of_project)
        engine = CorrelationEngine(
            chroma_store,
            broadcaster=broadcaster,
            router=router,
            threshold=settings.confidence_threshold,
        )
        pipeline = EventPipeline(
            chroma_store,
            router=router,
            broadcaster=broadcaster,
            engine=engine,
            max_payload_length=settings.max_payload_length,
        )

    manifest_loader = ManifestLoader(settings.manifest_paths)
    manifest_metadata: dict[str, Any] = {
        "paths": [str(path) for path in manifest_loader.search_paths],
        "imported": [],
        "error": None,
    }
    if chroma_store is not None:
        try:
            for manifest in manifest_loader.load_all().values():
                summary = import_manifest(manifest, chroma_store, router)
                manifest_metadata["imported"].append(summary.to_dict())
        except ManifestLoadError as exc:
            manifest_metadata["error"] = str(exc)
            logger.warning("Task manifests could not be loaded", extra={"error": str(exc)})

    server = FastMCP(
        name="TaskLink MCP",
        version=__version__,
        instructions=(
            "TaskLink correlates coding-agent activity with planned tasks. Ingest hook events, "
            "register project directories, and inspect task progress and the correlation audit."
        ),
    )

    handles = register_tools(
        server,
        chroma_store=chroma_store,
        router=router,
        pipeline=pipeline,
        manifests=manifest_loader,
    )

    def build_status_payload(request_id: str | None = None) -> dict[str, Any]:
        tasks_summary: dict[str, Any] = {"count": 0, "status_counts": {}, "projects": []}
        registry_count = 0
        storage_error = None
        if chroma_store is not None:
            try:
                tasks = chroma_store.list_tasks()
                status_counts: dict[str, int] = {}
                for task in tasks:
                    status_counts[task.status] = status_counts.get(task.status, 0) + 1
                tasks_summary = {
                    "count": len(tasks),
                    "status_counts": status_counts,
                    "projects": chroma_store.list_projects(),
                }
                registry_count = len(chroma_store.list_registry())
            except Exception as exc:  # status must render even when storage misbehaves
                storage_error = str(exc)

        outcome_counts: dict[str, int] = {}
        for outcome in pipeline.outcomes if pipeline else []:
            outcome_counts[outcome.status] = outcome_counts.get(outcome.status, 0) + 1

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "storage": {"chroma": chroma_metadata, "error": storage_error},
            "manifests": manifest_metadata,
            "tasks": tasks_summary,
            "registry": {"count": registry_count},
            "correlation": {
                "threshold": settings.confidence_threshold,
                "pending": pipeline.pending if pipeline else 0,
                "recent_outcomes": outcome_counts,
            },
            "broadcast": {
                "subscribers": broadcaster.subscriber_count,
                "heartbeat_running": broadcaster.heartbeat_running,
                "heartbeat_interval": settings.heartbeat_interval,
            },
            "request_id": request_id,
        }

    @server.resource(
        "resource://tasklink/status",
        name="tasklink_status",
        title="TaskLink MCP Status",
        description="Provides the current runtime status for the TaskLink MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        return json.dumps(build_status_payload(getattr(context, "request_id", None)))

    async def stream_events(request: Request) -> StreamingResponse:
        """Open a server-sent-event stream filtered by ``session_id`` or ``project_id``."""

        subscriber = StreamSubscriber(max_pending=settings.subscriber_queue_size)
        subscriber_id = request.query_params.get("client_id") or uuid4().hex
        broadcaster.add_subscriber(
            subscriber_id,
            subscriber,
            session_filter=request.query_params.get("session_id"),
            project_filter=request.query_params.get("project_id"),
        )
        return StreamingResponse(
            subscriber.frames(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    server.custom_route("/stream", methods=["GET"])(stream_events)

    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "manifest_metadata", manifest_metadata)
    setattr(server, "broadcaster", broadcaster)
    setattr(server, "router", router)
    setattr(server, "engine", engine)
    setattr(server, "pipeline", pipeline)
    setattr(server, "tool_handles", handles)
    setattr(server, "build_status_payload", build_status_payload)
    setattr(server, "stream_events", stream_events)
    return server


def main() -> None:
    """Entry point for running the TaskLink MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching TaskLink MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "transport": settings.transport,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    try:
        if settings.transport == "stdio":
            server.run()
        else:
            server.run(transport=settings.transport, host=settings.host, port=settings.port)
    finally:
        getattr(server, "broadcaster").shutdown()


if __name__ == "__main__":
    main()
