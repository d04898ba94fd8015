"""Remote execution of report SQL and classification of its failures.

The remote engine is SQL Server behind the HaloPSA API, so classification
works on the literal SQL Server error messages it relays. Everything that
depends on that wording lives in ``classify_sql_error``; an unfamiliar
message comes back as ``unclassified`` and is never rewritten.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from api.services.errors import APIError, NotFoundError, TransientAPIError
from api.services.logger import logger
from api.services.psa import KnownIdentifiers, Report, ReportService


class ErrorCategory(str, Enum):
    UNKNOWN_OBJECT = "unknown-object"
    UNKNOWN_COLUMN = "unknown-column"
    MISSING_TOP_WITH_ORDER_BY = "missing-top-with-order-by"
    UNQUOTED_IDENTIFIER = "unquoted-identifier"
    UNCLASSIFIED = "unclassified"


# Table names LLMs commonly invent, with the real HaloPSA object to use instead.
KNOWN_BAD_OBJECTS: dict[str, str] = {
    "TIMETAKEN": "ACTIONS",
    "CLIENT": "AREA",
    "CLIENTS": "AREA",
    "CUSTOMER": "AREA",
    "AGENT": "UNAME",
    "AGENTS": "UNAME",
    "TEAM": "UNAME",
    "PRIORITY": "POLICY",
    "TICKETS": "FAULTS",
    "TICKET": "FAULTS",
    "STATUSES": "TSTATUS",
}

# Column names LLMs commonly invent, with the real column. Names containing
# spaces are Request_View columns and get bracket-quoted when substituted.
KNOWN_BAD_COLUMNS: dict[str, str] = {
    "dateoccurred": "dateoccured",
    "dateclosed": "datecleared",
    "slahold": "FSLAonhold",
    "priority_id": "seriousness",
    "client_id": "Areaint",
    "agent_id": "Assignedtoint",
    "assigned_agent_id": "Assignedtoint",
    "closedby_agent_id": "Clearwhoint",
    "ticket_id": "Faultid",
    "customer_name": "Customer Name",
    "priority_description": "Priority Description",
    "date_logged": "Date Logged",
    "date_closed": "Date Closed",
    "sla_compliance": "SLA Compliance",
    "response_time": "Response Time",
    "response_date": "Response Date",
    "ticket_number": "Ticket Number",
    "time_taken": "Time Taken",
}

SPACED_IDENTIFIERS: tuple[str, ...] = (
    "Customer Name", "Ticket Number", "Ticket Summary", "Date Logged", "Date Closed",
    "Priority Description", "Status ID", "SLA Compliance", "Response Time", "Response Date",
    "Resolution Time", "Time Taken",
)

_INVALID_OBJECT = re.compile(r"Invalid object name '([^']+)'", re.IGNORECASE)
_INVALID_COLUMN = re.compile(r"Invalid column name '([^']+)'", re.IGNORECASE)
_ORDER_BY_INVALID = re.compile(r"ORDER BY clause is invalid", re.IGNORECASE)
_SYNTAX_NEAR = re.compile(r"Incorrect syntax near '([^']*)'", re.IGNORECASE)
_STRING_LITERAL = re.compile(r"('(?:[^']|'')*')")


@dataclass(frozen=True)
class Classification:
    category: ErrorCategory
    identifier: Optional[str] = None


def bare_identifier(name: str) -> str:
    """Strip schema prefix and brackets: ``[dbo].[Client]`` -> ``Client``."""
    last = name.strip().split(".")[-1]
    return last.strip("[]\"` ")


def split_literals(sql: str) -> list[str]:
    """Split SQL into alternating code / string-literal segments (literals at odd indexes)."""
    return _STRING_LITERAL.split(sql)


def _code_only(sql: str) -> str:
    return "".join(part if index % 2 == 0 else "''" for index, part in enumerate(split_literals(sql)))


def spaced_identifier_pattern(identifier: str) -> re.Pattern[str]:
    words = r"\s+".join(re.escape(word) for word in identifier.split())
    return re.compile(rf"(?<![\[\w\"]){words}(?![\]\w\"])", re.IGNORECASE)


def spaced_identifiers(known: Optional[KnownIdentifiers] = None) -> list[str]:
    names = list(SPACED_IDENTIFIERS)
    if known is not None:
        names.extend(sorted(column for column in known.columns if " " in column and column not in names))
    return names


def find_unquoted_identifiers(sql: str, known: Optional[KnownIdentifiers] = None) -> list[str]:
    code = _code_only(sql)
    return [name for name in spaced_identifiers(known) if spaced_identifier_pattern(name).search(code)]


def find_known_bad_object(sql: str) -> Optional[str]:
    code = _code_only(sql)
    for match in re.finditer(r"\b(?:FROM|JOIN)\s+((?:\[?\w+\]?\.)*\[?\w+\]?)", code, re.IGNORECASE):
        name = bare_identifier(match.group(1))
        if name.upper() in KNOWN_BAD_OBJECTS:
            return name
    return None


def classify_sql_error(
    error: str,
    sql: str = "",
    known: Optional[KnownIdentifiers] = None,
) -> Classification:
    """Classify a remote SQL failure from its error text and the SQL that produced it."""
    error = error or ""
    unquoted = find_unquoted_identifiers(sql, known)

    match = _INVALID_OBJECT.search(error)
    if match:
        return Classification(ErrorCategory.UNKNOWN_OBJECT, bare_identifier(match.group(1)))

    match = _INVALID_COLUMN.search(error)
    if match:
        column = bare_identifier(match.group(1))
        # "SELECT Customer Name" reads as column Customer aliased Name.
        for name in unquoted:
            if column.lower() in {word.lower() for word in name.split()}:
                return Classification(ErrorCategory.UNQUOTED_IDENTIFIER, name)
        return Classification(ErrorCategory.UNKNOWN_COLUMN, column)

    if _ORDER_BY_INVALID.search(error):
        return Classification(ErrorCategory.MISSING_TOP_WITH_ORDER_BY)

    if _SYNTAX_NEAR.search(error) and unquoted:
        return Classification(ErrorCategory.UNQUOTED_IDENTIFIER, unquoted[0])

    bad_object = find_known_bad_object(sql)
    if bad_object:
        return Classification(ErrorCategory.UNKNOWN_OBJECT, bad_object)

    return Classification(ErrorCategory.UNCLASSIFIED)


@dataclass
class ValidationResult:
    valid: bool
    report_id: int
    report_name: str = ""
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    offending_identifier: Optional[str] = None
    row_count: Optional[int] = None
    columns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["error_category"] = self.error_category.value if self.error_category else None
        return data


class SqlValidator:
    def __init__(self, reports: ReportService, *, row_cap: int = 100) -> None:
        self.reports = reports
        self.row_cap = row_cap

    async def validate_report(self, report_id: int, known: Optional[KnownIdentifiers] = None) -> ValidationResult:
        try:
            report = await self.reports.get(report_id)
        except TransientAPIError:
            raise
        except NotFoundError:
            return ValidationResult(
                valid=False,
                report_id=report_id,
                report_name=f"Report {report_id}",
                error=f"Report {report_id} not found",
                error_category=ErrorCategory.UNCLASSIFIED,
            )
        return await self.validate(report, known)

    async def validate(self, report: Report, known: Optional[KnownIdentifiers] = None) -> ValidationResult:
        try:
            run = await self.reports.run(report.id, row_limit=self.row_cap)
        except TransientAPIError:
            raise
        except APIError as exc:
            error = str(exc.response or exc)
        else:
            if run.error is None:
                return ValidationResult(
                    valid=True,
                    report_id=report.id,
                    report_name=report.name,
                    row_count=run.row_count,
                    columns=run.columns,
                )
            error = run.error

        classification = classify_sql_error(error, report.sql, known)
        logger.info(
            "Report %s failed validation (%s): %s",
            report.id, classification.category.value, error[:200],
        )
        return ValidationResult(
            valid=False,
            report_id=report.id,
            report_name=report.name,
            error=error,
            error_category=classification.category,
            offending_identifier=classification.identifier,
        )
