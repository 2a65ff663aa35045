"""TaskLink MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from tasklink_mcp.config import TaskLinkSettings
from tasklink_mcp.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: TaskLinkSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = TaskLinkSettings()
    store = load_store(settings)
    tasks = store.list_tasks(args.project)
    if args.json:
        print(json.dumps([task.to_document() for task in tasks], indent=2))
    else:
        for task in tasks:
            print(f"{task.id} [{task.status}] {task.title} -> {task.assigned_agent or '-'}")


def cmd_registry(args: argparse.Namespace) -> None:
    settings = TaskLinkSettings()
    store = load_store(settings)
    payload = [
        {
            "working_directory": entry.working_directory,
            "project_id": entry.project_id,
            "planning_path": entry.planning_path,
            "registered_at": entry.registered_at.isoformat(),
        }
        for entry in store.list_registry()
    ]
    print(json.dumps(payload, indent=2))


def cmd_audit(args: argparse.Namespace) -> None:
    settings = TaskLinkSettings()
    store = load_store(settings)
    limit = args.limit if args.limit is not None and args.limit > 0 else None
    records = store.list_audit(event_id=args.event_id, task_id=args.task_id, limit=limit)
    if args.unmatched:
        records = [record for record in records if not record.matched]

    payload = [
        {
            "event_id": record.event_id,
            "task_id": record.task_id,
            "layer": record.layer,
            "score": record.score,
            "matched": record.matched,
            "reason": record.reason,
            "timestamp": record.timestamp.isoformat(),
        }
        for record in records
    ]
    print(json.dumps(payload, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = TaskLinkSettings()
    store = load_store(settings)
    filters = {}
    if args.session_id:
        filters["session_id"] = args.session_id
    if args.hook:
        filters["event_type"] = args.hook
    limit = args.limit if args.limit is not None and args.limit > 0 else None
    events = store.search_events(args.query, filters=filters or None, limit=limit)

    payload = [
        {
            "event_id": event.id,
            "session_id": event.session_id,
            "hook": event.event_type,
            "tool": event.metadata.get("tool"),
            "file_path": event.metadata.get("file_path"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = TaskLinkSettings()
    store = load_store(settings)
    tasks = store.list_tasks()
    registry = store.list_registry()
    activity = store.list_activity()
    audit = store.list_audit()

    status_counts: dict[str, int] = {}
    for task in tasks:
        status_counts[task.status] = status_counts.get(task.status, 0) + 1

    activity_counts: dict[str, int] = {}
    for record in activity:
        activity_counts[record.activity_type] = activity_counts.get(record.activity_type, 0) + 1

    layer_counts: dict[str, dict[str, int]] = {}
    for record in audit:
        counts = layer_counts.setdefault(record.layer, {"matched": 0, "unmatched": 0})
        counts["matched" if record.matched else "unmatched"] += 1

    matched = sum(1 for record in audit if record.matched)
    metrics = {
        "tasks_total": len(tasks),
        "status_counts": status_counts,
        "registry_total": len(registry),
        "activity_total": len(activity),
        "activity_counts": activity_counts,
        "correlation_attempts": len(audit),
        "correlation_match_rate": round(matched / len(audit), 3) if audit else None,
        "correlation_layers": layer_counts,
        "confidence_threshold": settings.confidence_threshold,
    }

    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TaskLink MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="List stored tasks")
    p_tasks.add_argument("--project", help="Only tasks of this project")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_registry = sub.add_parser("registry", help="List registered working directories")
    p_registry.set_defaults(func=cmd_registry)

    p_audit = sub.add_parser("audit", help="List correlation attempts")
    p_audit.add_argument("--event-id")
    p_audit.add_argument("--task-id")
    p_audit.add_argument("--unmatched", action="store_true", help="Only attempts below threshold")
    p_audit.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N attempts",
    )
    p_audit.set_defaults(func=cmd_audit)

    p_events = sub.add_parser("events", help="Search stored agent events")
    p_events.add_argument("query", nargs="?", help="Free text matched against event body and metadata")
    p_events.add_argument("--session-id")
    p_events.add_argument("--hook", help="Only events of this hook type")
    p_events.add_argument("--limit", type=int, default=None, help="Show at most N events")
    p_events.set_defaults(func=cmd_events)

    p_metrics = sub.add_parser("metrics", help="Show task, activity and correlation counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
