from __future__ import annotations

import re
from dataclasses import dataclass, field
from difflib import get_close_matches
from typing import Any, Callable, Optional

from api.services.errors import APIError, TransientAPIError
from api.services.logger import logger
from api.services.psa import ChartConfig, KnownIdentifiers, Report, ReportService
from api.services.sql_validator import (
    KNOWN_BAD_COLUMNS,
    KNOWN_BAD_OBJECTS,
    ErrorCategory,
    SqlValidator,
    ValidationResult,
    bare_identifier,
    find_known_bad_object,
    find_unquoted_identifiers,
    spaced_identifier_pattern,
    split_literals,
)
from api.services.vetted_sql import VettedTemplateLibrary

DEFAULT_TOP_LIMIT = 1000


def _closest(name: str, candidates: frozenset[str]) -> Optional[str]:
    by_upper = {candidate.upper(): candidate for candidate in candidates}
    matches = get_close_matches(name.upper(), list(by_upper), n=1, cutoff=0.75)
    return by_upper[matches[0]] if matches else None


def _sql_name(name: str) -> str:
    return f"[{name}]" if " " in name else name


def _outside_literals(sql: str, rewrite: Callable[[str], str]) -> str:
    parts = split_literals(sql)
    return "".join(rewrite(part) if index % 2 == 0 else part for index, part in enumerate(parts))


def replace_unknown_object(sql: str, identifier: Optional[str], known: Optional[KnownIdentifiers] = None) -> str:
    target = bare_identifier(identifier) if identifier else find_known_bad_object(sql)
    if not target:
        return sql
    replacement = KNOWN_BAD_OBJECTS.get(target.upper())
    if replacement is None and known is not None:
        replacement = _closest(target, known.objects)
    if replacement is None or replacement.upper() == target.upper():
        return sql

    pattern = re.compile(
        rf"(\b(?:FROM|JOIN)\s+)(?:\[?\w+\]?\.)*\[?{re.escape(target)}\]?(?![\w\]])",
        re.IGNORECASE,
    )
    return _outside_literals(sql, lambda code: pattern.sub(lambda m: m.group(1) + replacement, code))


def replace_unknown_column(sql: str, identifier: Optional[str], known: Optional[KnownIdentifiers] = None) -> str:
    if not identifier:
        return sql
    column = bare_identifier(identifier)
    replacement = KNOWN_BAD_COLUMNS.get(column.lower())
    if replacement is None and known is not None:
        replacement = _closest(column, known.columns)
    if replacement is None or replacement == column:
        return sql

    escaped = re.escape(column)
    pattern = re.compile(rf"\[{escaped}\]|(?<![\w\[]){escaped}(?![\w\]])", re.IGNORECASE)
    return _outside_literals(sql, lambda code: pattern.sub(_sql_name(replacement), code))


def _blank_literals(sql: str) -> str:
    """Blank string-literal contents to spaces, keeping every offset."""
    return "".join(
        part if index % 2 == 0 else "'" + " " * (len(part) - 2) + "'"
        for index, part in enumerate(split_literals(sql))
    )


def _nesting_levels(code: str) -> list[int]:
    levels: list[int] = []
    level = 0
    for char in code:
        if char == ")":
            level -= 1
        levels.append(level)
        if char == "(":
            level += 1
    return levels


def insert_row_limit(sql: str, limit: int = DEFAULT_TOP_LIMIT) -> str:
    """Add ``TOP n`` to every SELECT that owns an ORDER BY but has no row limit."""
    code = _blank_literals(sql)
    levels = _nesting_levels(code)
    order_bys = [m.start() for m in re.finditer(r"\bORDER\s+BY\b", code, re.IGNORECASE)]
    inserts: list[int] = []

    for select in re.finditer(r"\bSELECT\b(?:\s+DISTINCT\b)?", code, re.IGNORECASE):
        if levels[select.start()] < 0:
            continue
        depth = levels[select.start()]
        end = next((i for i in range(select.end(), len(code)) if levels[i] < depth), len(code))
        owns_order_by = any(select.end() <= pos < end and levels[pos] == depth for pos in order_bys)
        has_limit = re.match(r"\s+TOP\b", code[select.end():], re.IGNORECASE)
        if owns_order_by and not has_limit:
            inserts.append(select.end())

    for position in reversed(inserts):
        sql = f"{sql[:position]} TOP {limit}{sql[position:]}"
    return sql


def quote_spaced_identifiers(sql: str, known: Optional[KnownIdentifiers] = None) -> str:
    for name in find_unquoted_identifiers(sql, known):
        pattern = spaced_identifier_pattern(name)
        sql = _outside_literals(sql, lambda code: pattern.sub(f"[{name}]", code))
    return sql


@dataclass(frozen=True)
class RewriteRule:
    name: str
    apply: Callable[[str, ValidationResult, Optional[KnownIdentifiers]], str]


REWRITE_RULES: dict[ErrorCategory, RewriteRule] = {
    ErrorCategory.UNKNOWN_OBJECT: RewriteRule(
        "replace-unknown-object",
        lambda sql, result, known: replace_unknown_object(sql, result.offending_identifier, known),
    ),
    ErrorCategory.UNKNOWN_COLUMN: RewriteRule(
        "replace-unknown-column",
        lambda sql, result, known: replace_unknown_column(sql, result.offending_identifier, known),
    ),
    ErrorCategory.MISSING_TOP_WITH_ORDER_BY: RewriteRule(
        "insert-top-before-order-by",
        lambda sql, result, known: insert_row_limit(sql),
    ),
    ErrorCategory.UNQUOTED_IDENTIFIER: RewriteRule(
        "bracket-quote-identifiers",
        lambda sql, result, known: quote_spaced_identifiers(sql, known),
    ),
}


@dataclass
class FixAttempt:
    attempt_number: int
    rule_applied: str
    sql: str
    validation: Optional[ValidationResult] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "rule_applied": self.rule_applied,
            "sql": self.sql,
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass
class FixOutcome:
    validation: ValidationResult
    attempts_used: int = 0
    fixes_applied: list[FixAttempt] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.validation.valid

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.validation.to_dict(),
            "attempts_used": self.attempts_used,
            "fixes_applied": [fix.to_dict() for fix in self.fixes_applied],
        }


@dataclass
class CreatedReport:
    report: Optional[Report]
    validated: bool
    used_fallback: bool = False
    fixes_applied: list[FixAttempt] = field(default_factory=list)
    error: Optional[str] = None


class AutoFixLoop:
    def __init__(
        self,
        reports: ReportService,
        validator: SqlValidator,
        vetted: VettedTemplateLibrary,
        *,
        category: str = "Dashboard",
    ) -> None:
        self.reports = reports
        self.validator = validator
        self.vetted = vetted
        self.category = category

    async def validate_and_fix_report(
        self,
        report_id: int,
        max_attempts: int = 3,
        known: Optional[KnownIdentifiers] = None,
    ) -> FixOutcome:
        """Validate a report, rewriting its SQL after each classified failure.

        Every loop iteration validates once; at most ``max_attempts - 1``
        rewrites are applied, one rule per failure. A failure with no
        applicable rule, or a rule that leaves the SQL unchanged, ends the
        loop immediately.
        """
        max_attempts = max(1, max_attempts)
        try:
            report = await self.reports.get(report_id)
        except TransientAPIError:
            raise
        except APIError:
            return FixOutcome(validation=await self.validator.validate_report(report_id, known))

        fixes: list[FixAttempt] = []
        attempt = 0
        while True:
            result = await self.validator.validate(report, known)
            if fixes:
                fixes[-1].validation = result
            if result.valid or attempt >= max_attempts - 1:
                return FixOutcome(validation=result, attempts_used=attempt, fixes_applied=fixes)

            rule = REWRITE_RULES.get(result.error_category) if result.error_category else None
            if rule is None:
                logger.info("No rewrite rule for report %s (%s)", report.id, result.error_category)
                return FixOutcome(validation=result, attempts_used=attempt, fixes_applied=fixes)

            rewritten = rule.apply(report.sql, result, known)
            if rewritten == report.sql:
                logger.info("Rule %s left report %s unchanged", rule.name, report.id)
                return FixOutcome(validation=result, attempts_used=attempt, fixes_applied=fixes)

            try:
                await self.reports.update_sql(report.id, rewritten)
            except TransientAPIError:
                raise
            except APIError as exc:
                logger.warning("Could not update report %s: %s", report.id, exc)
                return FixOutcome(validation=result, attempts_used=attempt, fixes_applied=fixes)

            report.sql = rewritten
            attempt += 1
            fixes.append(FixAttempt(attempt_number=attempt, rule_applied=rule.name, sql=rewritten))
            logger.info("Applied %s to report %s (attempt %s)", rule.name, report.id, attempt)

    async def create_validated_report(
        self,
        name: str,
        sql: str,
        *,
        template_key: Optional[str] = None,
        chart: Optional[ChartConfig] = None,
        description: Optional[str] = None,
        max_attempts: int = 3,
        known: Optional[KnownIdentifiers] = None,
    ) -> CreatedReport:
        """Create a report that is confirmed to execute, falling back to vetted SQL."""
        fixes: list[FixAttempt] = []
        error: Optional[str] = None

        report = await self._create(name, sql, chart, description or "Auto-created for dashboard widget")
        if isinstance(report, str):
            error = report
        else:
            outcome = await self.validate_and_fix_report(report.id, max_attempts, known)
            fixes = outcome.fixes_applied
            if outcome.valid:
                if fixes:
                    report.sql = fixes[-1].sql
                return CreatedReport(report=report, validated=True, fixes_applied=fixes)
            error = outcome.validation.error
            await self._discard(report.id)

        vetted_sql = self.vetted.get_validated_sql(template_key) if template_key else None
        if vetted_sql is None:
            return CreatedReport(report=None, validated=False, fixes_applied=fixes, error=error)

        fallback = await self._create(
            name, vetted_sql, chart, "Auto-created for dashboard widget (using validated template)"
        )
        if isinstance(fallback, str):
            return CreatedReport(report=None, validated=False, fixes_applied=fixes, error=fallback)

        validation = await self.validator.validate(fallback, known)
        if validation.valid:
            logger.info("Used validated template '%s' for report '%s'", template_key, name)
            return CreatedReport(report=fallback, validated=True, used_fallback=True, fixes_applied=fixes)

        await self._discard(fallback.id)
        return CreatedReport(
            report=None,
            validated=False,
            fixes_applied=fixes,
            error=f"Validated template '{template_key}' failed: {validation.error}",
        )

    async def _create(self, name: str, sql: str, chart: Optional[ChartConfig], description: str) -> Report | str:
        try:
            return await self.reports.create(
                name=name,
                sql=sql,
                description=description,
                category=self.category,
                is_shared=True,
                chart=chart,
            )
        except TransientAPIError:
            raise
        except APIError as exc:
            logger.warning("Could not create report '%s': %s", name, exc)
            return f"Could not create report '{name}': {exc}"

    async def _discard(self, report_id: int) -> None:
        try:
            await self.reports.delete(report_id)
        except TransientAPIError:
            raise
        except APIError as exc:
            logger.warning("Could not delete failed report %s: %s", report_id, exc)
