from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from api.services.errors import APIError, HaloError
from api.services.halo_client import HaloClient
from api.services.logger import logger


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def _records(payload: Any, *keys: str) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        for key in (*keys, "records"):
            value = payload.get(key)
            if isinstance(value, list):
                return [row for row in value if isinstance(row, dict)]
    return []


def _first_record(payload: Any) -> Optional[dict[str, Any]]:
    if isinstance(payload, list):
        return payload[0] if payload and isinstance(payload[0], dict) else None
    if isinstance(payload, dict) and "id" in payload:
        return payload
    return None


@dataclass
class Report:
    id: int
    name: str
    sql: str = ""
    description: str = ""
    category: Optional[str] = None
    chart_type: Optional[int] = None
    x_axis: Optional[str] = None
    y_axis: Optional[str] = None
    is_shared: bool = False
    date_modified: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Report":
        return cls(
            id=int(data.get("id") or 0),
            name=data.get("name") or "",
            sql=data.get("sql") or data.get("sql_query") or data.get("_sql") or "",
            description=data.get("description") or "",
            category=data.get("category"),
            chart_type=data.get("charttype", data.get("chart_type")),
            x_axis=data.get("xaxis"),
            y_axis=data.get("yaxis"),
            is_shared=bool(data.get("isshared", data.get("is_shared", False))),
            date_modified=_parse_datetime(data.get("datemodified") or data.get("datecreated")),
        )


@dataclass(frozen=True)
class ChartConfig:
    chart_type: int
    x_axis: Optional[str] = None
    y_axis: Optional[str] = None
    title: Optional[str] = None


@dataclass
class ReportRun:
    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    error: Optional[str] = None


@dataclass
class DashboardWidget:
    title: str
    widget_type: Optional[int] = None
    report_id: Optional[int] = None
    filter_id: Optional[int] = None

    @property
    def report_backed(self) -> bool:
        return bool(self.report_id and self.report_id > 0)


@dataclass
class Dashboard:
    id: int
    name: str
    description: str = ""
    widgets: list[DashboardWidget] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Dashboard":
        widgets = [
            DashboardWidget(
                title=raw.get("title") or raw.get("name") or f"Widget {raw.get('i') or raw.get('id') or ''}".strip(),
                widget_type=raw.get("type"),
                report_id=raw.get("report_id"),
                filter_id=raw.get("filter_id"),
            )
            for raw in _records(data.get("widgets") or [])
        ]
        return cls(
            id=int(data.get("id") or 0),
            name=data.get("name") or "",
            description=data.get("description") or "",
            widgets=widgets,
        )


class ReportService:
    endpoint = "/Report"

    def __init__(self, client: HaloClient) -> None:
        self.client = client

    async def list(self, *, count: int = 50, search: Optional[str] = None) -> list[Report]:
        payload = await self.client.get(self.endpoint, {"count": count, "search": search})
        return [Report.from_api(row) for row in _records(payload, "reports")]

    async def get(self, report_id: int) -> Report:
        payload = await self.client.get(f"{self.endpoint}/{report_id}", {"includedetails": True})
        return Report.from_api(payload or {"id": report_id})

    async def create(
        self,
        *,
        name: str,
        sql: str,
        description: str = "",
        category: Optional[str] = None,
        is_shared: bool = True,
        chart: Optional[ChartConfig] = None,
    ) -> Report:
        # The API expects lowercase field names: 'sql', 'isshared', 'charttype'.
        data: dict[str, Any] = {"name": name, "sql": sql.strip(), "isshared": is_shared}
        if description:
            data["description"] = description
        if category:
            data["category"] = category
        if chart is not None:
            data["charttype"] = chart.chart_type
            data["charttitle"] = chart.title or name
            data["showgraphvalues"] = True
            # Template SQL already aggregates with COUNT(*).
            data["count"] = False
            if chart.x_axis:
                data["xaxis"] = chart.x_axis
            if chart.y_axis:
                data["yaxis"] = chart.y_axis

        payload = await self.client.post(self.endpoint, [data])
        record = _first_record(payload)
        report = Report.from_api(record) if record else None
        if report is None or report.id <= 0:
            raise APIError(f"Report created but no valid ID returned: {str(payload)[:200]}")
        if not report.sql:
            report.sql = data["sql"]
        return report

    async def update_sql(self, report_id: int, sql: str) -> None:
        await self.client.post(self.endpoint, [{"id": report_id, "sql": sql}])

    async def delete(self, report_id: int) -> None:
        await self.client.delete(f"{self.endpoint}/{report_id}")

    async def run(self, report_id: int, *, row_limit: int) -> ReportRun:
        payload = await self.client.get(f"{self.endpoint}/{report_id}/run", {"count": row_limit})
        payload = payload if isinstance(payload, dict) else {"rows": payload or []}

        error = payload.get("error") or payload.get("errormessage")
        if error:
            return ReportRun(error=str(error))

        rows = _records(payload.get("rows") or [])
        columns = payload.get("columns") or (list(rows[0].keys()) if rows else [])
        return ReportRun(
            columns=[str(column) for column in columns],
            rows=rows,
            row_count=int(payload.get("record_count") or len(rows)),
        )


class DashboardService:
    endpoint = "/DashboardLinks"

    def __init__(self, client: HaloClient) -> None:
        self.client = client

    async def get(self, dashboard_id: int) -> Dashboard:
        payload = await self.client.get(f"{self.endpoint}/{dashboard_id}")
        return Dashboard.from_api(payload or {"id": dashboard_id})

    async def create(self, *, name: str, description: str = "") -> Dashboard:
        data: dict[str, Any] = {"name": name}
        if description:
            data["description"] = description
        payload = await self.client.post(self.endpoint, [data])
        record = _first_record(payload)
        dashboard = Dashboard.from_api(record) if record else None
        if dashboard is None or dashboard.id <= 0:
            raise APIError(f"Dashboard created but no valid ID returned: {str(payload)[:200]}")
        return dashboard

    async def update_widgets(self, dashboard_id: int, widgets: list[dict[str, Any]]) -> None:
        """Replace the dashboard's widget list; the API has no per-widget endpoint."""
        await self.client.post(self.endpoint, [{"id": dashboard_id, "widgets": widgets}])

    async def delete(self, dashboard_id: int) -> None:
        await self.client.delete(f"{self.endpoint}/{dashboard_id}")


# Tables, views and columns confirmed to exist in the HaloPSA reporting database.
REPORTABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "Request_View": (
        "Ticket Number", "Customer Name", "Ticket Summary", "Priority Description", "Status",
        "Status ID", "Date Logged", "Date Closed", "Category", "User", "Site", "SLA Compliance",
        "Response Time", "Response Date", "Resolution Time", "Time Taken",
    ),
    "Action_View": (),
    "Asset_View": (),
    "FAULTS": (
        "Faultid", "Status", "seriousness", "dateoccured", "datecleared", "Assignedtoint",
        "Clearwhoint", "sitenumber", "Areaint", "Username", "category2", "Fdeleted",
        "fmergedintofaultid", "slastate", "slaresponsestate", "FSLAonhold", "FexcludefromSLA",
        "FResponseTime", "FResponseDate",
    ),
    "UNAME": ("Unum", "uname", "Uisdisabled"),
    "SITE": ("Ssitenum", "sdesc"),
    "AREA": ("Aarea", "aareadesc"),
    "TSTATUS": ("Tstatus", "tstatusdesc", "TstatusType"),
    "POLICY": ("Ppolicy", "Pdesc"),
    "ACTIONS": ("Atimetaken", "Adate", "Awho"),
    "USERS": (),
    "REQUESTTYPE": (),
}


@dataclass(frozen=True)
class KnownIdentifiers:
    objects: frozenset[str] = frozenset()
    columns: frozenset[str] = frozenset()


def static_identifiers() -> KnownIdentifiers:
    columns = {column for table in REPORTABLE_COLUMNS.values() for column in table}
    return KnownIdentifiers(objects=frozenset(REPORTABLE_COLUMNS), columns=frozenset(columns))


class SchemaService:
    """Optional schema introspection used to bias SQL rewrites."""

    def __init__(self, client: HaloClient) -> None:
        self.client = client

    async def field_definitions(self) -> list[dict[str, Any]]:
        payload = await self.client.get("/Field", {"count": 500})
        return _records(payload, "fields")

    async def known_identifiers(self) -> KnownIdentifiers:
        known = static_identifiers()
        try:
            fields = await self.field_definitions()
        except (HaloError, httpx.HTTPError) as exc:
            logger.warning("Schema introspection unavailable, using static schema: %s", exc)
            return known
        custom = {str(row["name"]) for row in fields if row.get("name")}
        return KnownIdentifiers(objects=known.objects, columns=known.columns | custom)
