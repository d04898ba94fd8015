from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional


class WidgetKind(str, Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"
    DOUGHNUT = "doughnut"
    COUNTER = "counter"
    COUNTER_REPORT = "counter_report"
    LIST = "list"


@dataclass(frozen=True)
class KindSpec:
    widget_type: int
    chart_type: Optional[int]
    report_backed: bool


# Remote widget type codes: 0 bar/line chart, 1 pie/doughnut chart,
# 2 report counter, 6 list, 7 filter counter. Report chart types:
# 0 bar, 1 line, 2 pie, 3 doughnut.
KIND_SPECS: Mapping[WidgetKind, KindSpec] = MappingProxyType({
    WidgetKind.BAR: KindSpec(widget_type=0, chart_type=0, report_backed=True),
    WidgetKind.LINE: KindSpec(widget_type=0, chart_type=1, report_backed=True),
    WidgetKind.PIE: KindSpec(widget_type=1, chart_type=2, report_backed=True),
    WidgetKind.DOUGHNUT: KindSpec(widget_type=1, chart_type=3, report_backed=True),
    WidgetKind.COUNTER_REPORT: KindSpec(widget_type=2, chart_type=None, report_backed=True),
    WidgetKind.LIST: KindSpec(widget_type=6, chart_type=None, report_backed=False),
    WidgetKind.COUNTER: KindSpec(widget_type=7, chart_type=None, report_backed=False),
})

_unmapped = set(WidgetKind) - set(KIND_SPECS)
if _unmapped:
    raise RuntimeError(f"Widget kinds without a remote mapping: {sorted(k.value for k in _unmapped)}")


@dataclass(frozen=True)
class ChartAxis:
    x_axis: str
    y_axis: str


@dataclass(frozen=True)
class WidgetTemplate:
    name: str
    display_name: str
    kind: WidgetKind
    description: str = ""
    keywords: frozenset[str] = frozenset()
    sql_template: Optional[str] = None
    chart_axis: Optional[ChartAxis] = None
    filter_id: Optional[int] = None
    ticket_area_id: Optional[int] = None
    color: str = "#0f75b1"
    width: int = 4
    height: int = 3
    report_name: Optional[str] = None
    vetted_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.spec.report_backed and not self.sql_template:
            raise ValueError(f"Widget template {self.name} is report-backed but has no SQL")
        if not self.spec.report_backed and not self.filter_id:
            raise ValueError(f"Widget template {self.name} is filter-backed but has no filter")

    @property
    def spec(self) -> KindSpec:
        return KIND_SPECS[self.kind]

    @property
    def requires_report(self) -> bool:
        return self.spec.report_backed

    @property
    def resolved_report_name(self) -> str:
        return self.report_name or f"Dashboard - {self.display_name}"

    @property
    def semantic_key(self) -> str:
        return self.vetted_key or self.name

    def match_terms(self) -> list[str]:
        return [self.display_name, self.resolved_report_name, *sorted(self.keywords)]


@dataclass(frozen=True)
class DashboardLayout:
    name: str
    widgets: tuple[str, ...]


class WidgetCatalog:
    """Read-only set of widget templates and layouts, built once and injected."""

    def __init__(self, templates: Iterable[WidgetTemplate], layouts: Iterable[DashboardLayout]) -> None:
        by_name: dict[str, WidgetTemplate] = {}
        for template in templates:
            if template.name in by_name:
                raise ValueError(f"Duplicate widget template: {template.name}")
            by_name[template.name] = template

        layouts_by_name: dict[str, DashboardLayout] = {}
        for layout in layouts:
            unknown = [name for name in layout.widgets if name not in by_name]
            if unknown:
                raise ValueError(f"Layout {layout.name} references unknown templates: {unknown}")
            layouts_by_name[layout.name] = layout

        self._templates = MappingProxyType(by_name)
        self._layouts = MappingProxyType(layouts_by_name)

    def get_template(self, name: str) -> Optional[WidgetTemplate]:
        return self._templates.get(name)

    def get_layout(self, name: str) -> Optional[tuple[str, ...]]:
        layout = self._layouts.get(name)
        return layout.widgets if layout else None

    def templates(self) -> list[WidgetTemplate]:
        return list(self._templates.values())

    def template_names(self) -> list[str]:
        return list(self._templates)

    def layout_names(self) -> list[str]:
        return list(self._layouts)

    def describe(self) -> dict[str, Any]:
        return {
            "widget_templates": {
                template.name: {
                    "name": template.display_name,
                    "description": template.description,
                    "kind": template.kind.value,
                    "requires_report": template.requires_report,
                }
                for template in self._templates.values()
            },
            "dashboard_layouts": {
                layout.name: {"widgets": list(layout.widgets), "widget_count": len(layout.widgets)}
                for layout in self._layouts.values()
            },
        }


WIDGET_TEMPLATES: list[WidgetTemplate] = [
    WidgetTemplate(
        "open_tickets_counter", "Open Tickets", WidgetKind.COUNTER,
        description="Counter showing number of open tickets",
        keywords=frozenset({"open", "open_tickets", "overview", "service"}),
        filter_id=1, ticket_area_id=1, color="#0f75b1", width=2, height=2,
    ),
    WidgetTemplate(
        "unassigned_counter", "Unassigned Tickets", WidgetKind.COUNTER,
        description="Counter showing unassigned tickets",
        keywords=frozenset({"unassigned", "unassigned_tickets", "queue", "service"}),
        filter_id=1, ticket_area_id=1, color="#e83c4a", width=2, height=2,
    ),
    WidgetTemplate(
        "closed_tickets_counter", "Closed Today", WidgetKind.COUNTER,
        description="Counter showing tickets closed today",
        keywords=frozenset({"closed", "closed_today", "resolved"}),
        filter_id=3, ticket_area_id=1, color="#a1c652", width=2, height=2,
    ),
    WidgetTemplate(
        "sla_hold_counter", "SLA Hold", WidgetKind.COUNTER,
        description="Counter showing tickets on SLA hold",
        keywords=frozenset({"sla", "sla_hold", "on_hold", "hold"}),
        filter_id=2, ticket_area_id=1, color="#fcdc00", width=2, height=2,
    ),
    WidgetTemplate(
        "tickets_by_priority", "Tickets by Priority", WidgetKind.PIE,
        description="Pie chart showing ticket distribution by priority",
        keywords=frozenset({"priority", "tickets_by_priority", "ticket_priority", "overview", "management"}),
        chart_axis=ChartAxis("Priority", "Count"),
        sql_template="""
SELECT
    COALESCE(p.name, 'No Priority') AS Priority,
    COUNT(*) AS Count
FROM Faults f
LEFT JOIN PRIORITY p ON f.priority_id = p.id
WHERE f.statustype_id NOT IN (2, 3)
GROUP BY p.name
ORDER BY Count DESC""",
        color="#3498db",
    ),
    WidgetTemplate(
        "tickets_by_status", "Tickets by Status", WidgetKind.PIE,
        description="Pie chart showing ticket distribution by status",
        keywords=frozenset({"status", "tickets_by_status", "ticket_status"}),
        chart_axis=ChartAxis("Status", "Count"),
        sql_template="""
SELECT
    t.tstatusdesc AS Status,
    COUNT(*) AS Count
FROM FAULTS f
JOIN TSTATUS t ON f.Status = t.Tstatus
WHERE f.dateoccurred >= DATEADD(day, -30, GETDATE())
GROUP BY t.tstatusdesc
ORDER BY Count DESC""",
        color="#9b59b6",
    ),
    WidgetTemplate(
        "tickets_by_client", "Tickets by Client", WidgetKind.PIE,
        description="Pie chart showing tickets by client",
        keywords=frozenset({"client", "customer", "tickets_by_client", "top_clients"}),
        chart_axis=ChartAxis("Client", "Count"),
        sql_template="""
SELECT TOP 10
    COALESCE(c.name, 'No Client') AS Client,
    COUNT(*) AS Count
FROM FAULTS f
LEFT JOIN CLIENT c ON f.client_id = c.id
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
GROUP BY c.name
ORDER BY Count DESC""",
        color="#e74c3c",
    ),
    WidgetTemplate(
        "tickets_by_category", "Tickets by Category", WidgetKind.DOUGHNUT,
        description="Doughnut chart showing tickets by category",
        keywords=frozenset({"category", "categories", "tickets_by_category"}),
        chart_axis=ChartAxis("Category", "Count"),
        sql_template="""
SELECT
    COALESCE(f.category2, 'Uncategorized') AS Category,
    COUNT(*) AS Count
FROM FAULTS f
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
GROUP BY f.category2
ORDER BY Count DESC""",
        color="#2ecc71",
    ),
    WidgetTemplate(
        "agent_workload", "Agent Workload", WidgetKind.BAR,
        description="Bar chart showing open tickets per agent",
        keywords=frozenset({"agent", "workload", "agent_workload", "technician", "tickets_by_agent", "overview", "service"}),
        chart_axis=ChartAxis("Agent", "Open Tickets"),
        sql_template="""
SELECT
    COALESCE(a.uname, 'Unassigned') AS Agent,
    COUNT(*) AS [Open Tickets]
FROM FAULTS f
LEFT JOIN AGENT a ON f.Assignedtoint = a.Unum
JOIN TSTATUS t ON f.Status = t.Tstatus
WHERE t.TstatusType = 1
GROUP BY a.uname
ORDER BY COUNT(*) DESC""",
        color="#f39c12",
    ),
    WidgetTemplate(
        "tickets_closed_by_agent", "Tickets Closed by Agent", WidgetKind.BAR,
        description="Bar chart showing tickets closed by each agent",
        keywords=frozenset({"closed", "closed_by_agent", "resolved_by", "technician"}),
        chart_axis=ChartAxis("Agent", "Closed Tickets"),
        sql_template="""
SELECT TOP 10
    COALESCE(u.uname, 'Unknown') AS Agent,
    COUNT(*) AS [Closed Tickets]
FROM FAULTS f
JOIN UNAME u ON f.Clearwhoint = u.Unum
WHERE f.dateclosed >= DATEADD(day, -30, GETDATE())
GROUP BY u.uname
ORDER BY COUNT(*) DESC""",
        color="#1abc9c",
    ),
    WidgetTemplate(
        "tickets_over_time", "Tickets Over Time", WidgetKind.LINE,
        description="Line chart showing ticket volume over time",
        keywords=frozenset({"trend", "over_time", "daily_tickets", "weekly_tickets", "volume", "management"}),
        chart_axis=ChartAxis("Date", "Ticket Count"),
        sql_template="""
SELECT
    CONVERT(varchar, f.dateoccured, 23) AS Date,
    COUNT(*) AS [Ticket Count]
FROM FAULTS f
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
GROUP BY CONVERT(varchar, f.dateoccured, 23)
ORDER BY Date""",
        color="#34495e", width=6,
    ),
    WidgetTemplate(
        "sla_performance", "SLA Performance", WidgetKind.PIE,
        description="Pie chart showing SLA compliance",
        keywords=frozenset({"sla", "sla_performance", "sla_breach", "breach", "compliance", "management"}),
        chart_axis=ChartAxis("SLA Status", "Count"),
        sql_template="""
SELECT
    CASE
        WHEN f.slahold = 1 THEN 'On Hold'
        WHEN f.slabreach = 1 THEN 'Breached'
        ELSE 'Within SLA'
    END AS [SLA Status],
    COUNT(*) AS Count
FROM FAULTS f
JOIN TSTATUS t ON f.Status = t.Tstatus
WHERE t.TstatusType = 1
GROUP BY
    CASE
        WHEN f.slahold = 1 THEN 'On Hold'
        WHEN f.slabreach = 1 THEN 'Breached'
        ELSE 'Within SLA'
    END""",
        color="#e67e22",
    ),
    WidgetTemplate(
        "response_time_avg", "Avg Response Time", WidgetKind.COUNTER_REPORT,
        description="Average first response time in hours",
        keywords=frozenset({"response", "response_time", "first_response", "average_response"}),
        sql_template="""
SELECT
    ROUND(ISNULL(AVG([Response Time]), 0), 2) AS [Avg Response Hours]
FROM Request_View
WHERE [Response Date] IS NOT NULL
    AND [Date Logged] >= DATEADD(day, -30, GETDATE())""",
        color="#16a085", width=2, height=2,
    ),
    WidgetTemplate(
        "top_callers", "Top Callers", WidgetKind.PIE,
        description="Top users submitting tickets",
        keywords=frozenset({"caller", "top_callers", "requester", "customer", "users"}),
        chart_axis=ChartAxis("Caller", "Ticket Count"),
        sql_template="""
SELECT TOP 10
    COALESCE(f.Username, 'Unknown') AS Caller,
    COUNT(*) AS [Ticket Count]
FROM FAULTS f
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
GROUP BY f.Username
ORDER BY COUNT(*) DESC""",
        color="#8e44ad",
    ),
]

DASHBOARD_LAYOUTS: list[DashboardLayout] = [
    DashboardLayout("service_desk", (
        "open_tickets_counter", "unassigned_counter", "sla_hold_counter", "closed_tickets_counter",
        "tickets_by_priority", "agent_workload", "tickets_by_client",
    )),
    DashboardLayout("management", (
        "open_tickets_counter", "closed_tickets_counter", "tickets_by_priority", "tickets_by_status",
        "agent_workload", "sla_performance", "tickets_over_time",
    )),
    DashboardLayout("sla_focused", (
        "open_tickets_counter", "sla_hold_counter", "sla_performance", "response_time_avg",
        "tickets_by_priority", "agent_workload",
    )),
    DashboardLayout("client_focused", (
        "open_tickets_counter", "tickets_by_client", "top_callers", "tickets_by_category",
        "tickets_by_priority",
    )),
    DashboardLayout("minimal", (
        "open_tickets_counter", "unassigned_counter", "tickets_by_priority", "agent_workload",
    )),
]


@lru_cache(maxsize=1)
def default_catalog() -> WidgetCatalog:
    return WidgetCatalog(WIDGET_TEMPLATES, DASHBOARD_LAYOUTS)
