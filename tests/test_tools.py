from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from api.services.config import Settings
from api.services.tools import TOOLS, run_tool


def _call(name, arguments, settings, fake_halo):
    return asyncio.run(run_tool(name, arguments, settings=settings, transport=fake_halo.transport()))


def test_fix_report_tool(fake_halo, settings) -> None:
    report_id = fake_halo.add_report("Hours", "SELECT TOP 10 a.Atimetaken FROM TIMETAKEN a")

    before = _call("validate_report", {"report_id": report_id}, settings, fake_halo)
    fixed = _call("fix_report", {"report_id": report_id, "max_attempts": 3}, settings, fake_halo)

    assert before["success"] is True
    assert before["valid"] is False
    assert before["error_category"] == "unknown-object"
    assert fixed["valid"] is True
    assert fixed["attempts_used"] == 1
    assert fixed["fixes_applied"][0]["sql"].endswith("FROM ACTIONS a")


def test_create_validated_report_tool_uses_fallback(fake_halo, settings) -> None:
    result = _call(
        "create_validated_report",
        {"name": "Tickets by Priority", "sql": "SELECT ALWAYS_FAIL FROM FAULTS", "template_key": "tickets_by_priority"},
        settings,
        fake_halo,
    )
    assert result["success"] is True
    assert result["validated"] is True
    assert result["used_fallback"] is True


def test_tools_return_errors_instead_of_raising(fake_halo, settings) -> None:
    assert _call("no_such_tool", {}, settings, fake_halo)["success"] is False
    assert _call("fix_report", {"report_id": "abc"}, settings, fake_halo)["success"] is False

    layout = _call("smart_build_dashboard", {"name": "X", "layout": "nope"}, settings, fake_halo)
    assert layout == {"success": False, "error": "Unknown layout: nope"}

    unconfigured = asyncio.run(run_tool("validate_report", {"report_id": 1}, settings=Settings(halo_base_url="")))
    assert unconfigured["success"] is False
    assert unconfigured["error"].startswith("Authentication failed")


def test_catalog_tools(fake_halo, settings) -> None:
    templates = _call("list_dashboard_templates", {}, settings, fake_halo)
    assert "minimal" in templates["dashboard_layouts"]

    sql = _call("get_validated_sql", {"template_key": "agent_workload"}, settings, fake_halo)
    assert sql["success"] is True and "UNAME" in sql["sql"]
    assert _call("get_validated_sql", {"template_key": "nope"}, settings, fake_halo)["success"] is False

    suggested = _call("suggest_dashboard_widgets", {"description": "agent workload"}, settings, fake_halo)
    assert suggested["suggested_widgets"][0] == "agent_workload"


def test_smart_build_custom_dashboard_tool(fake_halo, settings) -> None:
    result = _call(
        "smart_build_custom_dashboard",
        {"name": "Counters", "widgets": ["open_tickets_counter", "closed_tickets_counter"]},
        settings,
        fake_halo,
    )
    assert result["success"] is True
    assert result["widgets_created"] == 2
    assert result["message"] == "Dashboard 'Counters' created with 2 of 2 widgets"


def test_tool_routes() -> None:
    from api.main import app

    client = TestClient(app)
    listed = client.get("/api/tools").json()
    assert {tool["name"] for tool in listed} == set(TOOLS)
    assert client.post("/api/tools/nope", json={}).status_code == 404

    response = client.post("/api/tools/list_validated_templates", json={})
    assert response.status_code == 200
    assert "tickets_by_priority_view" in response.json()["templates"]
    assert client.get("/api/health").json()["status"] == "ok"
