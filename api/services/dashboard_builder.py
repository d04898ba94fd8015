"""Assembles HaloPSA dashboards from widget templates.

Widgets are resolved one at a time: filter-backed widgets attach directly,
report-backed widgets reuse a matching report (validated and repaired first)
or get a freshly created one. A widget that cannot be resolved is recorded
as failed and the build carries on with the next one.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Sequence, Union

import httpx

from api.services.auto_fix import AutoFixLoop
from api.services.config import Settings, get_settings
from api.services.errors import (
    DashboardCreationError,
    HaloError,
    LayoutNotFoundError,
    TemplateNotFoundError,
    describe_error,
)
from api.services.logger import logger
from api.services.psa import (
    ChartConfig,
    Dashboard,
    DashboardService,
    KnownIdentifiers,
    Report,
    ReportService,
    SchemaService,
    static_identifiers,
)
from api.services.report_matcher import ReportMatcher, keyword_overlap
from api.services.widget_catalog import WidgetCatalog, WidgetTemplate, default_catalog

# Failures of one remote call; they fail the widget being built, not the build.
REMOTE_ERRORS = (HaloError, httpx.HTTPError)

DEFAULT_SUGGESTIONS = ("open_tickets_counter", "tickets_by_priority", "agent_workload")


@dataclass(frozen=True)
class WidgetPosition:
    x: int
    y: int
    w: int
    h: int

    def overlaps(self, other: "WidgetPosition") -> bool:
        return (
            self.x < other.x + other.w
            and other.x < self.x + self.w
            and self.y < other.y + other.h
            and other.y < self.y + self.h
        )


def grid_position(
    index: int,
    template: WidgetTemplate,
    *,
    grid_columns: int = 12,
    cell_width: int = 4,
    cell_height: int = 3,
) -> WidgetPosition:
    """Place widget ``index`` in a fixed grid of cells; the widget never leaves its cell."""
    per_row = max(1, grid_columns // cell_width)
    row, column = divmod(index, per_row)
    return WidgetPosition(
        x=column * cell_width,
        y=row * cell_height,
        w=max(1, min(template.width, cell_width)),
        h=max(1, min(template.height, cell_height)),
    )


def widget_payload(index: int, template: WidgetTemplate, position: WidgetPosition, report_id: Optional[int] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "i": str(index + 1),
        "title": template.display_name,
        "type": template.spec.widget_type,
        "x": position.x,
        "y": position.y,
        "w": position.w,
        "h": position.h,
        "initialcolour": template.color,
    }
    if report_id:
        payload["report_id"] = report_id
        return payload

    payload["filter_id"] = template.filter_id
    if template.ticket_area_id:
        payload["ticketarea_id"] = template.ticket_area_id
    payload["view_type"] = "all"
    payload["counter_type"] = 0
    payload["count_format_type"] = 0
    return payload


@dataclass
class WidgetResult:
    widget_name: str
    status: str
    report_id: Optional[int] = None
    error: Optional[str] = None
    report_source: Optional[str] = None
    position: Optional[WidgetPosition] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["position"] = asdict(self.position) if self.position else None
        return data


@dataclass
class DashboardBuildResult:
    dashboard_name: str
    dashboard_id: Optional[int] = None
    widget_results: list[WidgetResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.dashboard_id is not None and any(r.status == "created" for r in self.widget_results)

    @property
    def reports_found(self) -> list[int]:
        return [
            r.report_id for r in self.widget_results
            if r.report_id and r.report_source in {"existing", "fixed"}
        ]

    @property
    def reports_created(self) -> list[int]:
        return [
            r.report_id for r in self.widget_results
            if r.report_id and r.report_source in {"created", "fallback"}
        ]

    @property
    def message(self) -> str:
        created = sum(1 for r in self.widget_results if r.status == "created")
        if not self.dashboard_id:
            return f"No widgets could be created for dashboard '{self.dashboard_name}'"
        return (
            f"Dashboard '{self.dashboard_name}' created with {created} of "
            f"{len(self.widget_results)} widgets"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "dashboard_id": self.dashboard_id,
            "dashboard_name": self.dashboard_name,
            "widgets_created": sum(1 for r in self.widget_results if r.status == "created"),
            "widget_results": [r.to_dict() for r in self.widget_results],
            "reports_found": self.reports_found,
            "reports_created": self.reports_created,
            "errors": self.errors,
            "message": self.message,
        }


@dataclass
class DashboardValidation:
    dashboard_id: int
    dashboard_name: str
    widgets: list[dict[str, Any]] = field(default_factory=list)

    def _count(self, key: str) -> int:
        return sum(1 for widget in self.widgets if widget.get(key))

    def to_dict(self) -> dict[str, Any]:
        valid = self._count("valid")
        return {
            "dashboard_id": self.dashboard_id,
            "dashboard_name": self.dashboard_name,
            "all_valid": valid == len(self.widgets),
            "validated": valid,
            "failed": len(self.widgets) - valid,
            "fixed": self._count("fixed"),
            "widgets": self.widgets,
        }


@dataclass
class _Resolution:
    report_id: Optional[int] = None
    source: Optional[str] = None
    error: Optional[str] = None


class DashboardBuilder:
    def __init__(
        self,
        reports: ReportService,
        dashboards: DashboardService,
        matcher: ReportMatcher,
        fixer: AutoFixLoop,
        *,
        catalog: Optional[WidgetCatalog] = None,
        settings: Optional[Settings] = None,
        schema: Optional[SchemaService] = None,
    ) -> None:
        self.reports = reports
        self.dashboards = dashboards
        self.matcher = matcher
        self.fixer = fixer
        self.catalog = catalog or default_catalog()
        self.settings = settings or get_settings()
        self.schema = schema

    async def known_identifiers(self) -> KnownIdentifiers:
        if self.schema is None:
            return static_identifiers()
        return await self.schema.known_identifiers()

    def _resolve_names(self, widgets_or_layout: Union[str, Sequence[str]]) -> tuple[list[str], list[str]]:
        if isinstance(widgets_or_layout, str):
            layout = self.catalog.get_layout(widgets_or_layout)
            if layout is None:
                raise LayoutNotFoundError(widgets_or_layout, self.catalog.layout_names())
            return list(layout), []

        names = list(widgets_or_layout)
        unknown = [name for name in names if self.catalog.get_template(name) is None]
        if len(unknown) == len(names):
            raise TemplateNotFoundError(unknown, self.catalog.template_names())
        return names, unknown

    async def build_dashboard(
        self,
        name: str,
        widgets_or_layout: Union[str, Sequence[str]] = "service_desk",
        description: str = "",
    ) -> DashboardBuildResult:
        names, unknown = self._resolve_names(widgets_or_layout)
        result = DashboardBuildResult(dashboard_name=name)
        if unknown:
            result.errors.append(f"Unknown widget templates skipped: {', '.join(unknown)}")

        known = await self.known_identifiers()
        attached: list[dict[str, Any]] = []

        for index, widget_name in enumerate(names):
            template = self.catalog.get_template(widget_name)
            if template is None:
                result.widget_results.append(
                    WidgetResult(widget_name, status="failed", error=f"Unknown widget template: {widget_name}")
                )
                continue

            position = grid_position(
                index,
                template,
                grid_columns=self.settings.dashboard_grid_columns,
                cell_width=self.settings.widget_cell_width,
                cell_height=self.settings.widget_cell_height,
            )
            if template.requires_report:
                try:
                    resolution = await self._resolve_report(template, known)
                except REMOTE_ERRORS as exc:
                    resolution = _Resolution(error=describe_error(exc))
            else:
                resolution = _Resolution(source="filter")

            if resolution.error or (template.requires_report and not resolution.report_id):
                error = resolution.error or "Could not find or create a working report"
                logger.warning("Widget %s failed: %s", widget_name, error)
                result.widget_results.append(
                    WidgetResult(widget_name, status="failed", error=error, position=position)
                )
                result.errors.append(f"{widget_name}: {error}")
                continue

            if result.dashboard_id is None:
                try:
                    result.dashboard_id = await self._create_dashboard(name, description)
                except DashboardCreationError:
                    if resolution.source in {"created", "fallback"}:
                        await self._discard_report(resolution.report_id)
                    raise

            payload = widget_payload(len(attached), template, position, resolution.report_id)
            try:
                await self.dashboards.update_widgets(result.dashboard_id, attached + [payload])
            except REMOTE_ERRORS as exc:
                logger.warning("Could not attach widget %s: %s", widget_name, exc)
                result.widget_results.append(
                    WidgetResult(
                        widget_name, status="failed", report_id=resolution.report_id,
                        error=f"Could not attach widget: {describe_error(exc)}",
                        report_source=resolution.source, position=position,
                    )
                )
                result.errors.append(f"{widget_name}: could not attach widget")
                continue

            attached.append(payload)
            result.widget_results.append(
                WidgetResult(
                    widget_name, status="created", report_id=resolution.report_id,
                    report_source=resolution.source, position=position,
                )
            )

        logger.info(result.message)
        return result

    async def _create_dashboard(self, name: str, description: str) -> int:
        try:
            dashboard = await self.dashboards.create(name=name, description=description)
        except REMOTE_ERRORS as exc:
            raise DashboardCreationError(f"Failed to create dashboard '{name}': {describe_error(exc)}") from exc
        logger.info("Created dashboard '%s' (id=%s)", name, dashboard.id)
        return dashboard.id

    async def _discard_report(self, report_id: Optional[int]) -> None:
        if not report_id:
            return
        try:
            await self.reports.delete(report_id)
        except REMOTE_ERRORS as exc:
            logger.warning("Could not delete stranded report %s: %s", report_id, exc)

    async def _resolve_report(self, template: WidgetTemplate, known: KnownIdentifiers) -> _Resolution:
        max_attempts = self.settings.max_fix_attempts
        existing = await self.matcher.find_matching_report(template.match_terms())
        if existing is not None:
            outcome = await self.fixer.validate_and_fix_report(existing.id, max_attempts, known)
            if outcome.valid:
                logger.info("Using existing report '%s' (id=%s)", existing.name, existing.id)
                return _Resolution(existing.id, "fixed" if outcome.fixes_applied else "existing")
            logger.warning(
                "Existing report '%s' (id=%s) could not be repaired: %s",
                existing.name, existing.id, outcome.validation.error,
            )

        chart = None
        if template.spec.chart_type is not None:
            chart = ChartConfig(
                chart_type=template.spec.chart_type,
                x_axis=template.chart_axis.x_axis if template.chart_axis else None,
                y_axis=template.chart_axis.y_axis if template.chart_axis else None,
                title=template.display_name,
            )

        created = await self.fixer.create_validated_report(
            template.resolved_report_name,
            template.sql_template or "",
            template_key=template.semantic_key,
            chart=chart,
            description=template.description,
            max_attempts=max_attempts,
            known=known,
        )
        if created.report is None or not created.validated:
            return _Resolution(error=created.error or "Report validation failed")

        source = "fallback" if created.used_fallback else "created"
        logger.info("Created report '%s' (id=%s, source=%s)", created.report.name, created.report.id, source)
        return _Resolution(created.report.id, source)

    def suggest_widgets_for_description(self, text: str, limit: int = 8) -> list[str]:
        scored = [
            (keyword_overlap(template.keywords, text), order, template.name)
            for order, template in enumerate(self.catalog.templates())
        ]
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: (-item[0], item[1]))
        if not ranked:
            return [name for name in DEFAULT_SUGGESTIONS if self.catalog.get_template(name)][:limit]
        return [name for _, _, name in ranked[:limit]]

    async def find_report_for_widget(self, keywords: Sequence[str]) -> Optional[Report]:
        """Look up a report by a widget template name or by free keywords."""
        terms: list[str] = []
        for keyword in keywords:
            template = self.catalog.get_template(keyword)
            terms.extend(template.match_terms() if template else [keyword])
        return await self.matcher.find_matching_report(terms)

    async def validate_dashboard(self, dashboard_id: int, auto_fix: bool = True) -> DashboardValidation:
        dashboard: Dashboard = await self.dashboards.get(dashboard_id)
        known = await self.known_identifiers()
        validation = DashboardValidation(dashboard_id=dashboard.id or dashboard_id, dashboard_name=dashboard.name)

        for widget in dashboard.widgets:
            if not widget.report_backed:
                validation.widgets.append({"title": widget.title, "report_id": None, "valid": True, "fixed": False})
                continue

            if auto_fix:
                outcome = await self.fixer.validate_and_fix_report(
                    widget.report_id, self.settings.max_fix_attempts, known,
                )
                check = outcome.validation
                fixed = check.valid and bool(outcome.fixes_applied)
            else:
                check = await self.fixer.validator.validate_report(widget.report_id, known)
                fixed = False

            validation.widgets.append({
                "title": widget.title,
                "report_id": widget.report_id,
                "valid": check.valid,
                "fixed": fixed,
                "error": check.error,
                "error_category": check.error_category.value if check.error_category else None,
            })

        return validation
