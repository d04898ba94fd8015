from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Type

import httpx
from pydantic import BaseModel, Field, ValidationError

from api.services.auto_fix import AutoFixLoop
from api.services.config import Settings, get_settings
from api.services.dashboard_builder import DashboardBuilder
from api.services.errors import describe_error
from api.services.halo_client import HaloClient
from api.services.logger import logger
from api.services.psa import ChartConfig, DashboardService, ReportService, SchemaService
from api.services.report_matcher import ReportMatcher
from api.services.sql_validator import SqlValidator
from api.services.vetted_sql import VettedTemplateLibrary, default_library
from api.services.widget_catalog import WidgetCatalog, default_catalog


class ToolContext:
    """Wires one HaloPSA client and the services built on it for a tool call."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        catalog: Optional[WidgetCatalog] = None,
        library: Optional[VettedTemplateLibrary] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = HaloClient(self.settings, transport=transport)
        self.catalog = catalog or default_catalog()
        self.library = library or default_library()

        self.reports = ReportService(self.client)
        self.dashboards = DashboardService(self.client)
        self.schema = SchemaService(self.client)
        self.validator = SqlValidator(self.reports, row_cap=self.settings.report_row_cap)
        self.matcher = ReportMatcher(
            self.reports,
            page_size=self.settings.report_match_page_size,
            min_overlap=self.settings.report_match_min_overlap,
        )
        self.fixer = AutoFixLoop(
            self.reports, self.validator, self.library, category=self.settings.report_category,
        )
        self.builder = DashboardBuilder(
            self.reports,
            self.dashboards,
            self.matcher,
            self.fixer,
            catalog=self.catalog,
            settings=self.settings,
            schema=self.schema,
        )

    async def __aenter__(self) -> "ToolContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.client.aclose()


class BuildDashboardParams(BaseModel):
    name: str
    layout: str = "service_desk"
    description: str = ""


class BuildCustomDashboardParams(BaseModel):
    name: str
    widgets: list[str] = Field(min_length=1)
    description: str = ""


class SuggestWidgetsParams(BaseModel):
    description: str
    limit: int = Field(default=8, ge=1, le=20)


class EmptyParams(BaseModel):
    pass


class FindReportParams(BaseModel):
    keywords: list[str] = Field(min_length=1)


class ReportIdParams(BaseModel):
    report_id: int


class FixReportParams(BaseModel):
    report_id: int
    max_attempts: int = Field(default=3, ge=1, le=10)


class ValidateDashboardParams(BaseModel):
    dashboard_id: int
    auto_fix: bool = True


class CreateValidatedReportParams(BaseModel):
    name: str
    sql: str
    description: Optional[str] = None
    template_key: Optional[str] = None
    chart_type: Optional[int] = Field(default=None, ge=0, le=3)
    x_axis: Optional[str] = None
    y_axis: Optional[str] = None


class TemplateKeyParams(BaseModel):
    template_key: str


def format_error(exc: BaseException, tool_name: str) -> dict[str, Any]:
    logger.error("Tool %s failed: %s", tool_name, exc, exc_info=exc)
    return {"success": False, "error": describe_error(exc)}


async def smart_build_dashboard(params: BuildDashboardParams, ctx: ToolContext) -> dict[str, Any]:
    result = await ctx.builder.build_dashboard(params.name, params.layout, params.description)
    return result.to_dict()


async def smart_build_custom_dashboard(params: BuildCustomDashboardParams, ctx: ToolContext) -> dict[str, Any]:
    result = await ctx.builder.build_dashboard(params.name, params.widgets, params.description)
    return result.to_dict()


async def suggest_dashboard_widgets(params: SuggestWidgetsParams, ctx: ToolContext) -> dict[str, Any]:
    names = ctx.builder.suggest_widgets_for_description(params.description, params.limit)
    suggestions = []
    for name in names:
        template = ctx.catalog.get_template(name)
        if template is not None:
            suggestions.append({"name": name, "display_name": template.display_name, "description": template.description})
    return {
        "success": True,
        "suggested_widgets": names,
        "widget_details": suggestions,
        "message": f"Suggested {len(names)} widgets. Use smart_build_custom_dashboard with these widget names.",
    }


async def list_dashboard_templates(params: EmptyParams, ctx: ToolContext) -> dict[str, Any]:
    return {"success": True, **ctx.catalog.describe()}


async def find_report_for_widget(params: FindReportParams, ctx: ToolContext) -> dict[str, Any]:
    report = await ctx.builder.find_report_for_widget(params.keywords)
    if report is None:
        return {"success": True, "found": False, "message": "No matching report found"}
    return {
        "success": True,
        "found": True,
        "report": {"id": report.id, "name": report.name, "description": report.description},
    }


async def validate_report(params: ReportIdParams, ctx: ToolContext) -> dict[str, Any]:
    known = await ctx.schema.known_identifiers()
    result = await ctx.validator.validate_report(params.report_id, known)
    return {"success": True, **result.to_dict()}


async def fix_report(params: FixReportParams, ctx: ToolContext) -> dict[str, Any]:
    known = await ctx.schema.known_identifiers()
    outcome = await ctx.fixer.validate_and_fix_report(params.report_id, params.max_attempts, known)
    return {"success": True, **outcome.to_dict()}


async def validate_dashboard(params: ValidateDashboardParams, ctx: ToolContext) -> dict[str, Any]:
    validation = await ctx.builder.validate_dashboard(params.dashboard_id, params.auto_fix)
    return {"success": True, **validation.to_dict()}


async def create_validated_report(params: CreateValidatedReportParams, ctx: ToolContext) -> dict[str, Any]:
    chart = None
    if params.chart_type is not None:
        chart = ChartConfig(params.chart_type, params.x_axis, params.y_axis, params.name)

    known = await ctx.schema.known_identifiers()
    created = await ctx.fixer.create_validated_report(
        params.name,
        params.sql,
        template_key=params.template_key,
        chart=chart,
        description=params.description,
        max_attempts=ctx.settings.max_fix_attempts,
        known=known,
    )
    return {
        "success": created.validated,
        "report_id": created.report.id if created.report else None,
        "report_name": created.report.name if created.report else params.name,
        "validated": created.validated,
        "used_fallback": created.used_fallback,
        "fixes_applied": [fix.to_dict() for fix in created.fixes_applied],
        "error": created.error,
    }


async def get_validated_sql(params: TemplateKeyParams, ctx: ToolContext) -> dict[str, Any]:
    sql = ctx.library.get_validated_sql(params.template_key)
    if sql is None:
        return {
            "success": False,
            "error": f"No validated SQL for '{params.template_key}'",
            "available": ctx.library.list_validated_templates(),
        }
    return {"success": True, "template_key": params.template_key, "sql": sql}


async def list_validated_templates(params: EmptyParams, ctx: ToolContext) -> dict[str, Any]:
    return {"success": True, "templates": ctx.library.list_validated_templates()}


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    params: Type[BaseModel]
    handler: Callable[[Any, ToolContext], Awaitable[dict[str, Any]]]


TOOLS: dict[str, Tool] = {
    tool.name: tool
    for tool in (
        Tool("smart_build_dashboard", "Build a dashboard from a named layout", BuildDashboardParams, smart_build_dashboard),
        Tool("smart_build_custom_dashboard", "Build a dashboard from a list of widget templates", BuildCustomDashboardParams, smart_build_custom_dashboard),
        Tool("suggest_dashboard_widgets", "Suggest widget templates for a description", SuggestWidgetsParams, suggest_dashboard_widgets),
        Tool("list_dashboard_templates", "List widget templates and dashboard layouts", EmptyParams, list_dashboard_templates),
        Tool("find_report_for_widget", "Find an existing report matching keywords", FindReportParams, find_report_for_widget),
        Tool("validate_report", "Run a report and classify any SQL error", ReportIdParams, validate_report),
        Tool("fix_report", "Validate a report and repair its SQL", FixReportParams, fix_report),
        Tool("validate_dashboard", "Validate every report behind a dashboard", ValidateDashboardParams, validate_dashboard),
        Tool("create_validated_report", "Create a report that is confirmed to run", CreateValidatedReportParams, create_validated_report),
        Tool("get_validated_sql", "Get vetted SQL for a widget type", TemplateKeyParams, get_validated_sql),
        Tool("list_validated_templates", "List vetted SQL template keys", EmptyParams, list_validated_templates),
    )
}


async def run_tool(
    tool_name: str,
    arguments: Optional[dict[str, Any]] = None,
    *,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, Any]:
    """Run one tool; failures come back as ``{"success": False, "error": ...}``."""
    tool = TOOLS.get(tool_name)
    if tool is None:
        return {"success": False, "error": f"Unknown tool: {tool_name}", "available": list(TOOLS)}

    try:
        params = tool.params.model_validate(arguments or {})
    except ValidationError as exc:
        return {"success": False, "error": f"Invalid arguments for {tool_name}: {exc}"}

    try:
        async with ToolContext(settings, transport=transport) as ctx:
            return await tool.handler(params, ctx)
    except Exception as exc:
        return format_error(exc, tool_name)
