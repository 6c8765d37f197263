"""
Event-date relevance against the configured search window.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime
from typing import List, Optional, Tuple

import structlog
from dateutil import parser as dateutil_parser

logger = structlog.get_logger(__name__)

# Day-of-month defaults to 1 when only "March 2025" is given.
_PARSE_DEFAULT = datetime(2000, 1, 1)


def parse_event_date(value: Optional[str]) -> Optional[date]:
    """Best-effort parse of a free-form event date. None when unparseable."""
    if not value or not value.strip():
        return None
    try:
        return dateutil_parser.parse(value, fuzzy=True, default=_PARSE_DEFAULT).date()
    except (ValueError, OverflowError) as e:
        logger.debug("Unparseable event date", value=value, error=str(e))
        return None


class EventDateFilter:
    """
    Decides whether an event date falls inside ``[start, end]``.

    Missing or unparseable dates count as relevant: absence of evidence is
    not evidence of an out-of-range event.
    """

    def __init__(self, start: date, end: date):
        if start > end:
            raise ValueError(f"start {start} is after end {end}")
        self.start = start
        self.end = end

    @classmethod
    def from_window(cls, window: Tuple[date, date]) -> "EventDateFilter":
        return cls(window[0], window[1])

    def is_relevant(self, event_date: Optional[str]) -> bool:
        parsed = parse_event_date(event_date)
        if parsed is None:
            return True
        return self.start <= parsed <= self.end

    def months(self) -> List[Tuple[str, int]]:
        """(month name, year) pairs covered by the window, in order."""
        result: List[Tuple[str, int]] = []
        year, month = self.start.year, self.start.month
        while (year, month) <= (self.end.year, self.end.month):
            result.append((calendar.month_name[month], year))
            month += 1
            if month > 12:
                month = 1
                year += 1
        return result
