from __future__ import annotations

import asyncio
from itertools import combinations

import pytest

from api.services.dashboard_builder import DashboardBuilder, grid_position
from api.services.errors import DashboardCreationError, LayoutNotFoundError, TemplateNotFoundError
from api.services.tools import run_tool
from api.services.widget_catalog import default_catalog


def test_grid_positions_never_overlap() -> None:
    templates = default_catalog().templates()
    for count in range(1, 21):
        positions = [grid_position(i, templates[i % len(templates)]) for i in range(count)]
        for first, second in combinations(positions, 2):
            assert not first.overlaps(second)
        assert all(p.x + p.w <= 12 for p in positions)


def test_suggest_widgets_for_description(settings) -> None:
    builder = DashboardBuilder(None, None, None, None, settings=settings)

    suggestions = builder.suggest_widgets_for_description("sla breaches and response time")

    assert suggestions[:2] == ["sla_performance", "response_time_avg"]
    assert "sla_hold_counter" in suggestions
    assert builder.suggest_widgets_for_description("zzz qqq") == [
        "open_tickets_counter",
        "tickets_by_priority",
        "agent_workload",
    ]
    assert len(builder.suggest_widgets_for_description("tickets priority agent client sla closed", limit=3)) == 3


def test_build_minimal_layout_from_empty_instance(fake_halo, context_factory) -> None:
    async def run():
        async with context_factory() as ctx:
            return await ctx.builder.build_dashboard("Ops Overview", "minimal")

    result = asyncio.run(run())

    assert [r.widget_name for r in result.widget_results] == [
        "open_tickets_counter",
        "unassigned_counter",
        "tickets_by_priority",
        "agent_workload",
    ]
    for widget in result.widget_results:
        assert widget.status in {"created", "failed"}
        if widget.status == "failed":
            assert widget.error
    assert result.dashboard_id is not None
    assert result.success is True

    by_name = {r.widget_name: r for r in result.widget_results}
    assert by_name["open_tickets_counter"].report_source == "filter"
    assert by_name["tickets_by_priority"].report_source == "fallback"
    assert by_name["agent_workload"].report_source == "created"
    assert sorted(result.reports_created) == sorted(
        [by_name["tickets_by_priority"].report_id, by_name["agent_workload"].report_id]
    )

    widgets = fake_halo.dashboards[result.dashboard_id]["widgets"]
    assert len(widgets) == 4
    assert widgets[0]["filter_id"] == 1
    assert widgets[3]["report_id"] == by_name["agent_workload"].report_id
    assert "TOP 1000" in fake_halo.reports[by_name["agent_workload"].report_id]["sql"]


def test_build_reuses_existing_report(fake_halo, context_factory) -> None:
    existing = fake_halo.add_report("Agent Workload", "SELECT TOP 20 u.uname, COUNT(*) FROM FAULTS f JOIN UNAME u ON 1 = 1")

    async def run():
        async with context_factory() as ctx:
            return await ctx.builder.build_dashboard("Team", ["agent_workload"])

    result = asyncio.run(run())
    assert result.widget_results[0].report_id == existing
    assert result.widget_results[0].report_source == "existing"
    assert result.reports_found == [existing]
    assert result.reports_created == []


def test_unknown_names_among_known_are_reported(context_factory) -> None:
    async def run():
        async with context_factory() as ctx:
            return await ctx.builder.build_dashboard("Mixed", ["open_tickets_counter", "nope"])

    result = asyncio.run(run())
    assert [r.status for r in result.widget_results] == ["created", "failed"]
    assert result.errors == ["Unknown widget templates skipped: nope"]


def test_unknown_layout_and_templates_raise(context_factory) -> None:
    async def run(target):
        async with context_factory() as ctx:
            return await ctx.builder.build_dashboard("X", target)

    with pytest.raises(LayoutNotFoundError):
        asyncio.run(run("does_not_exist"))
    with pytest.raises(TemplateNotFoundError):
        asyncio.run(run(["nope", "also_nope"]))


def test_dashboard_creation_failure_raises(fake_halo, context_factory) -> None:
    fake_halo.fail_dashboard_create = True

    async def run():
        async with context_factory() as ctx:
            return await ctx.builder.build_dashboard("Ops", ["open_tickets_counter"])

    with pytest.raises(DashboardCreationError):
        asyncio.run(run())


def test_validate_dashboard_repairs_widget_reports(fake_halo, context_factory) -> None:
    broken = fake_halo.add_report("Broken", "SELECT TOP 5 x FROM TIMETAKEN t")

    async def run():
        async with context_factory() as ctx:
            dashboard = await ctx.dashboards.create(name="Existing")
            await ctx.dashboards.update_widgets(
                dashboard.id,
                [
                    {"i": "1", "title": "Open", "type": 7, "filter_id": 1},
                    {"i": "2", "title": "Time", "type": 0, "report_id": broken},
                ],
            )
            return await ctx.builder.validate_dashboard(dashboard.id)

    summary = asyncio.run(run()).to_dict()
    assert summary["all_valid"] is True
    assert summary["validated"] == 2
    assert summary["fixed"] == 1


def test_timeout_on_one_widget_does_not_abort_build(fake_halo, settings, no_retry_wait) -> None:
    fake_halo.timeout_report_names = {"Dashboard - Agent Workload"}

    result = asyncio.run(
        run_tool(
            "smart_build_dashboard",
            {"name": "Ops Overview", "layout": "minimal"},
            settings=settings,
            transport=fake_halo.transport(),
        )
    )

    assert result["success"] is True
    assert result["dashboard_id"] in fake_halo.dashboards
    statuses = {r["widget_name"]: r["status"] for r in result["widget_results"]}
    assert statuses == {
        "open_tickets_counter": "created",
        "unassigned_counter": "created",
        "tickets_by_priority": "created",
        "agent_workload": "failed",
    }
    assert result["widget_results"][3]["error"] == "The request to HaloPSA timed out. Please try again."
    assert result["errors"] == ["agent_workload: The request to HaloPSA timed out. Please try again."]
    assert len(fake_halo.dashboards[result["dashboard_id"]]["widgets"]) == 3


def test_attach_failure_fails_only_that_widget(fake_halo, context_factory, no_retry_wait) -> None:
    fake_halo.rejected_widget_titles = {"Unassigned Tickets"}

    async def run():
        async with context_factory() as ctx:
            return await ctx.builder.build_dashboard(
                "Counters", ["open_tickets_counter", "unassigned_counter", "closed_tickets_counter"]
            )

    result = asyncio.run(run())
    assert [r.status for r in result.widget_results] == ["created", "failed", "created"]
    assert result.widget_results[1].error.startswith("Could not attach widget")
    assert result.errors == ["unassigned_counter: could not attach widget"]
    titles = [w["title"] for w in fake_halo.dashboards[result.dashboard_id]["widgets"]]
    assert titles == ["Open Tickets", "Closed Today"]


def test_dashboard_creation_failure_discards_new_report(fake_halo, context_factory, no_retry_wait) -> None:
    fake_halo.fail_dashboard_create = True

    async def run():
        async with context_factory() as ctx:
            return await ctx.builder.build_dashboard("Categories", ["tickets_by_category"])

    with pytest.raises(DashboardCreationError):
        asyncio.run(run())
    assert fake_halo.reports == {}
    assert fake_halo.dashboards == {}
