from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from api.services.logger import logger
from api.services.psa import Report, ReportService

_NON_WORD = re.compile(r"[^a-z0-9]+")


def normalize_text(text: str) -> str:
    """Lowercase, turn punctuation and underscores into single spaces."""
    return " ".join(_NON_WORD.sub(" ", (text or "").lower()).split())


def keyword_overlap(keywords: Iterable[str], text: str) -> int:
    """Count keywords contained in ``text``; each found keyword counts once."""
    haystack = normalize_text(text)
    phrases = {normalize_text(keyword) for keyword in keywords}
    return sum(1 for phrase in phrases if phrase and phrase in haystack)


@dataclass
class ReportMatch:
    report: Report
    score: int
    exact: bool

    def rank(self) -> tuple[bool, int, datetime]:
        return (self.exact, self.score, self.report.date_modified or datetime.min)


def score_report(report: Report, keywords: list[str]) -> ReportMatch:
    name = normalize_text(report.name)
    exact = bool(name) and any(normalize_text(keyword) == name for keyword in keywords)
    score = keyword_overlap(keywords, f"{report.name} {report.description}")
    return ReportMatch(report=report, score=score, exact=exact)


class ReportMatcher:
    def __init__(self, reports: ReportService, *, page_size: int = 500, min_overlap: int = 2) -> None:
        self.reports = reports
        self.page_size = page_size
        self.min_overlap = min_overlap

    def best_match(self, candidates: Iterable[Report], keywords: list[str]) -> Optional[ReportMatch]:
        eligible = [
            match
            for match in (score_report(report, keywords) for report in candidates if report.id > 0)
            if match.exact or match.score >= self.min_overlap
        ]
        if not eligible:
            return None
        return max(eligible, key=ReportMatch.rank)

    async def find_matching_report(self, keywords: list[str]) -> Optional[Report]:
        keywords = [keyword for keyword in keywords if keyword and keyword.strip()]
        if not keywords:
            return None

        candidates = await self.reports.list(count=self.page_size)
        match = self.best_match(candidates, keywords)
        if match is None:
            return None

        logger.info(
            "Matched report '%s' (id=%s, score=%s, exact=%s)",
            match.report.name, match.report.id, match.score, match.exact,
        )
        return match.report
