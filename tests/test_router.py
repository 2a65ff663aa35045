from __future__ import annotations

import pytest

from tasklink_mcp.routing import ProjectRouter, normalize_directory


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("/work/repo/", "/work/repo"),
        ("C:\\work\\repo\\", "C:/work/repo"),
        ("//work//repo", "/work/repo"),
        ("/", "/"),
    ],
)
def test_normalize_directory(raw: str, expected: str) -> None:
    assert normalize_directory(raw) == expected


def test_resolve_prefers_exact_then_longest_prefix(store) -> None:
    router = ProjectRouter(store)
    router.register_directory("/work/mono", "mono")
    router.register_directory("/work/mono/services/billing", "billing")

    assert router.resolve_project("/work/mono") == "mono"
    assert router.resolve_project("/work/mono/services/billing/src/api") == "billing"
    assert router.resolve_project("/work/mono/services/auth") == "mono"
    assert router.resolve_project("/work/monolith") is None
    assert router.resolve_project("/elsewhere") is None


def test_register_directory_upserts(store) -> None:
    router = ProjectRouter(store)
    router.register_directory("/work/app/", "old")
    router.register_directory("/work/app", "new", planning_path="/work/app/PLAN.md")

    entries = router.list_registry()
    assert len(entries) == 1
    assert entries[0].project_id == "new"
    assert entries[0].planning_path == "/work/app/PLAN.md"


def test_register_directory_rejects_blank_values(store) -> None:
    router = ProjectRouter(store)
    with pytest.raises(ValueError):
        router.register_directory("  ", "proj")
    with pytest.raises(ValueError):
        router.register_directory("/work/app", " ")


def test_bind_session_is_write_once(store) -> None:
    router = ProjectRouter(store)
    router.register_directory("/work/alpha", "alpha")
    router.register_directory("/work/beta", "beta")

    first = router.bind_session("sess-1", "/work/alpha/src")
    second = router.bind_session("sess-1", "/work/beta")

    assert first is not None and second is not None
    assert first.project_id == "alpha"
    assert second.project_id == "alpha"
    assert router.project_for_session("sess-1") == "alpha"
    assert router.sessions_of_project("beta") == []


def test_bind_session_unresolved_directory(store) -> None:
    router = ProjectRouter(store)

    assert router.bind_session("sess-1", "/nowhere") is None
    assert router.project_for_session("sess-1") is None


def test_sessions_of_project_and_unregister(store) -> None:
    router = ProjectRouter(store)
    router.register_directory("/work/alpha", "alpha")
    router.bind_session("s1", "/work/alpha")
    router.bind_session("s2", "/work/alpha/docs")

    assert router.sessions_of_project("alpha") == ["s1", "s2"]

    assert router.unregister_directory("/work/alpha/") is True
    assert router.resolve_project("/work/alpha") is None
    # bindings outlive the registration
    assert router.project_for_session("s1") == "alpha"
