"""SQL known to execute against the HaloPSA reporting schema.

Used as the last-resort fallback when a widget's own SQL cannot be repaired.
"""

from __future__ import annotations

from functools import lru_cache
from types import MappingProxyType
from typing import Mapping, Optional

VALIDATED_SQL_TEMPLATES: dict[str, str] = {
    "tickets_by_priority": """SELECT TOP 100
    COALESCE(p.Pdesc, 'No Priority') AS [Priority],
    COUNT(*) AS [Count]
FROM FAULTS f
LEFT JOIN POLICY p ON f.seriousness = p.Ppolicy
JOIN TSTATUS t ON f.Status = t.Tstatus
WHERE t.TstatusType = 1
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY p.Pdesc""",

    "tickets_by_status": """SELECT TOP 100
    t.tstatusdesc AS [Status],
    COUNT(*) AS [Count]
FROM FAULTS f
JOIN TSTATUS t ON f.Status = t.Tstatus
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY t.tstatusdesc""",

    "tickets_by_client": """SELECT TOP 10
    COALESCE(a.aareadesc, 'No Client') AS [Client],
    COUNT(*) AS [Count]
FROM FAULTS f
LEFT JOIN AREA a ON f.Areaint = a.Aarea
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY a.aareadesc""",

    "tickets_by_category": """SELECT TOP 100
    COALESCE(f.category2, 'Uncategorized') AS [Category],
    COUNT(*) AS [Count]
FROM FAULTS f
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY f.category2""",

    "agent_workload": """SELECT TOP 20
    COALESCE(u.uname, 'Unassigned') AS [Agent],
    COUNT(*) AS [Open Tickets]
FROM FAULTS f
LEFT JOIN UNAME u ON f.Assignedtoint = u.Unum
JOIN TSTATUS t ON f.Status = t.Tstatus
WHERE t.TstatusType = 1
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY u.uname""",

    "tickets_closed_by_agent": """SELECT TOP 10
    COALESCE(u.uname, 'Unknown') AS [Agent],
    COUNT(*) AS [Closed Tickets]
FROM FAULTS f
JOIN UNAME u ON f.Clearwhoint = u.Unum
WHERE f.datecleared >= DATEADD(day, -30, GETDATE())
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY u.uname""",

    "tickets_over_time": """SELECT TOP 30
    CONVERT(varchar, f.dateoccured, 23) AS [Date],
    COUNT(*) AS [Ticket Count]
FROM FAULTS f
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY CONVERT(varchar, f.dateoccured, 23)""",

    "sla_performance": """SELECT TOP 10
    CASE
        WHEN f.slaresponsestate = 'I' AND f.slastate = 'I' THEN 'Fully Met'
        WHEN f.slaresponsestate = 'O' OR f.slastate = 'O' THEN 'Missed'
        WHEN f.FSLAonhold = 1 THEN 'On Hold'
        ELSE 'Pending'
    END AS [SLA Status],
    COUNT(*) AS [Count]
FROM FAULTS f
JOIN TSTATUS t ON f.Status = t.Tstatus
WHERE t.TstatusType = 1
    AND f.FexcludefromSLA = 0
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY
    CASE
        WHEN f.slaresponsestate = 'I' AND f.slastate = 'I' THEN 'Fully Met'
        WHEN f.slaresponsestate = 'O' OR f.slastate = 'O' THEN 'Missed'
        WHEN f.FSLAonhold = 1 THEN 'On Hold'
        ELSE 'Pending'
    END""",

    "response_time_avg": """SELECT TOP 1
    ROUND(ISNULL(AVG(f.FResponseTime), 0), 2) AS [Avg Response Hours]
FROM FAULTS f
WHERE f.FResponseDate IS NOT NULL
    AND f.dateoccured >= DATEADD(day, -30, GETDATE())
    AND f.Fdeleted = f.fmergedintofaultid""",

    "top_callers": """SELECT TOP 10
    COALESCE(f.Username, 'Unknown') AS [Caller],
    COUNT(*) AS [Ticket Count]
FROM FAULTS f
WHERE f.dateoccured >= DATEADD(day, -30, GETDATE())
    AND f.Fdeleted = f.fmergedintofaultid
GROUP BY f.Username""",

    # Request_View alternates
    "tickets_by_priority_view": """SELECT TOP 100
    COALESCE([Priority Description], 'No Priority') AS [Priority],
    COUNT(*) AS [Count]
FROM Request_View
WHERE [Status ID] NOT IN (
    SELECT Tstatus FROM TSTATUS WHERE TstatusType IN (2, 3)
)
GROUP BY [Priority Description]""",

    "tickets_by_status_view": """SELECT TOP 100
    [Status] AS [Status],
    COUNT(*) AS [Count]
FROM Request_View
WHERE [Date Logged] >= DATEADD(day, -30, GETDATE())
GROUP BY [Status]""",

    "tickets_by_client_view": """SELECT TOP 10
    COALESCE([Customer Name], 'No Client') AS [Client],
    COUNT(*) AS [Count]
FROM Request_View
WHERE [Date Logged] >= DATEADD(day, -30, GETDATE())
GROUP BY [Customer Name]""",
}


class VettedTemplateLibrary:
    def __init__(self, templates: Mapping[str, str]) -> None:
        self._templates = MappingProxyType(dict(templates))

    def get_validated_sql(self, key: str) -> Optional[str]:
        return self._templates.get(key)

    def list_validated_templates(self) -> list[str]:
        return list(self._templates)

    def __contains__(self, key: object) -> bool:
        return key in self._templates


@lru_cache(maxsize=1)
def default_library() -> VettedTemplateLibrary:
    return VettedTemplateLibrary(VALIDATED_SQL_TEMPLATES)
