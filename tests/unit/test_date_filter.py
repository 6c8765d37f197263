"""Tests for event-date relevance."""

from datetime import date

import pytest

from leadminer.classifier import EventDateFilter, parse_event_date


@pytest.fixture
def window():
    return EventDateFilter(date(2025, 3, 1), date(2025, 12, 31))


class TestEventDateFilter:
    @pytest.mark.parametrize("value", ["2025-03-01", "December 31, 2025", "Saturday, May 10th 2025", "June 2025"])
    def test_dates_inside_window(self, window, value):
        assert window.is_relevant(value) is True

    @pytest.mark.parametrize("value", ["2025-02-28", "January 15, 2026", "2024-11-01"])
    def test_dates_outside_window(self, window, value):
        assert window.is_relevant(value) is False

    @pytest.mark.parametrize("value", [None, "", "   ", "to be announced"])
    def test_missing_or_unparseable_counts_as_relevant(self, window, value):
        assert window.is_relevant(value) is True

    def test_months_span_year_boundary(self):
        months = EventDateFilter(date(2025, 11, 15), date(2026, 2, 1)).months()
        assert months == [("November", 2025), ("December", 2025), ("January", 2026), ("February", 2026)]

    def test_inverted_window(self):
        with pytest.raises(ValueError):
            EventDateFilter(date(2025, 12, 1), date(2025, 1, 1))

    def test_from_window(self):
        f = EventDateFilter.from_window((date(2025, 1, 1), date(2025, 1, 31)))
        assert f.months() == [("January", 2025)]


def test_parse_event_date_defaults_day_to_first():
    assert parse_event_date("March 2025") == date(2025, 3, 1)
    assert parse_event_date("nonsense") is None
