from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional

import httpx
import pytest
from tenacity import wait_none

from api.services.config import Settings
from api.services.halo_client import HaloClient
from api.services.tools import ToolContext

BAD_OBJECTS = {"TIMETAKEN", "CLIENT", "AGENT", "PRIORITY", "TEAM"}
BAD_COLUMNS = ("dateoccurred", "statustype_id", "priority_id", "slahold", "slabreach", "client_id", "dateclosed")
ORDER_BY_MESSAGE = (
    "The ORDER BY clause is invalid in views, inline functions, derived tables, subqueries, "
    "and common table expressions, unless TOP, OFFSET or FOR XML is also specified."
)


def execute_sql(sql: str) -> Optional[str]:
    """Return the SQL Server style error the fake engine raises for ``sql``, or None."""
    if "ALWAYS_FAIL" in sql.upper():
        return "A severe error occurred on the current command."
    for match in re.finditer(r"\b(?:FROM|JOIN)\s+\[?(\w+)\]?", sql, re.IGNORECASE):
        if match.group(1).upper() in BAD_OBJECTS:
            return f"Invalid object name '{match.group(1)}'."
    for column in BAD_COLUMNS:
        if re.search(rf"(?<![\w\[]){column}(?![\w\]])", sql, re.IGNORECASE):
            return f"Invalid column name '{column}'."
    if re.search(r"\bORDER\s+BY\b", sql, re.IGNORECASE) and not re.search(r"\bTOP\b", sql, re.IGNORECASE):
        return ORDER_BY_MESSAGE
    return None


class FakeHalo:
    """In-memory HaloPSA served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.reports: dict[int, dict[str, Any]] = {}
        self.dashboards: dict[int, dict[str, Any]] = {}
        self.deleted_reports: list[int] = []
        self.auth_calls = 0
        self.fail_dashboard_create = False
        self.timeout_report_names: set[str] = set()
        self.rejected_widget_titles: set[str] = set()
        self._next_id = 100

    def add_report(self, name: str, sql: str, description: str = "", datemodified: Optional[str] = None) -> int:
        report_id = self._allocate()
        self.reports[report_id] = {
            "id": report_id,
            "name": name,
            "sql": sql,
            "description": description,
            "datemodified": datemodified or "2024-01-01T00:00:00Z",
        }
        return report_id

    def _allocate(self) -> int:
        self._next_id += 1
        return self._next_id

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/auth/token":
            self.auth_calls += 1
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": 3600})

        parts = [part for part in path.split("/") if part][1:]
        body = json.loads(request.content) if request.content else None

        if parts[0] == "Report":
            return self._report(request, parts[1:], body)
        if parts[0] == "DashboardLinks":
            return self._dashboard(request.method, parts[1:], body)
        if parts[0] == "Field":
            return httpx.Response(200, json=[])
        return httpx.Response(404, json={"error": "Unknown endpoint"})

    def _report(self, request: httpx.Request, rest: list[str], body: Any) -> httpx.Response:
        method = request.method
        if method == "GET" and not rest:
            return httpx.Response(200, json={"reports": list(self.reports.values()), "record_count": len(self.reports)})

        if method == "POST":
            saved = []
            for item in body:
                if item.get("id") in self.reports:
                    self.reports[item["id"]].update(item)
                    saved.append(self.reports[item["id"]])
                else:
                    report_id = self._allocate()
                    self.reports[report_id] = {**item, "id": report_id, "datemodified": "2024-06-01T00:00:00Z"}
                    saved.append(self.reports[report_id])
            return httpx.Response(200, json=saved)

        report = self.reports.get(int(rest[0]))
        if report is None:
            return httpx.Response(404, json={"error": "Report not found"})

        if method == "DELETE":
            del self.reports[report["id"]]
            self.deleted_reports.append(report["id"])
            return httpx.Response(200)
        if len(rest) > 1 and rest[1] == "run":
            if report["name"] in self.timeout_report_names:
                raise httpx.ConnectTimeout("Timed out connecting to HaloPSA", request=request)
            error = execute_sql(report["sql"])
            if error:
                return httpx.Response(400, json={"error": error})
            return httpx.Response(200, json={"columns": ["Label", "Count"], "rows": [{"Label": "A", "Count": 3}]})
        return httpx.Response(200, json=report)

    def _dashboard(self, method: str, rest: list[str], body: Any) -> httpx.Response:
        if method == "POST":
            item = body[0]
            if item.get("id") in self.dashboards:
                titles = {widget.get("title") for widget in item.get("widgets") or []}
                if titles & self.rejected_widget_titles:
                    return httpx.Response(500, json={"error": "Widget rejected"})
                self.dashboards[item["id"]].update(item)
                return httpx.Response(200, json=[self.dashboards[item["id"]]])
            if self.fail_dashboard_create:
                return httpx.Response(500, json={"error": "Dashboard storage unavailable"})
            dashboard_id = self._allocate()
            self.dashboards[dashboard_id] = {"widgets": [], **item, "id": dashboard_id}
            return httpx.Response(200, json=[self.dashboards[dashboard_id]])

        dashboard = self.dashboards.get(int(rest[0]))
        if dashboard is None:
            return httpx.Response(404, json={"error": "Dashboard not found"})
        if method == "DELETE":
            del self.dashboards[dashboard["id"]]
            return httpx.Response(200)
        return httpx.Response(200, json=dashboard)


@pytest.fixture
def fake_halo() -> FakeHalo:
    return FakeHalo()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        halo_base_url="https://halo.test",
        halo_client_id="client-id",
        halo_client_secret="client-secret",
    )


@pytest.fixture
def context_factory(fake_halo: FakeHalo, settings: Settings) -> Callable[[], ToolContext]:
    def factory() -> ToolContext:
        return ToolContext(settings, transport=fake_halo.transport())

    return factory


@pytest.fixture
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(HaloClient._request.retry, "wait", wait_none())
