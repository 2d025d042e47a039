"""Tests for billing period helpers."""

from datetime import date, datetime, timedelta, timezone

import pytest

from offerquota.app.core.periods import current_period, normalize_period, period_iso

FALLBACK = date(2000, 1, 1)


class TestCurrentPeriod:
    """Test the first-day-of-UTC-month period key."""

    def test_mid_month(self):
        now = datetime(2024, 7, 15, 9, 30, tzinfo=timezone.utc)
        assert current_period(now) == date(2024, 7, 1)

    def test_converts_to_utc_before_truncating(self):
        """Late evening on the last day in UTC-5 is already next month in UTC."""
        now = datetime(2024, 6, 30, 21, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert current_period(now) == date(2024, 7, 1)

    def test_naive_is_treated_as_utc(self):
        assert current_period(datetime(2024, 12, 31, 23, 59)) == date(2024, 12, 1)

    def test_default_is_first_of_month(self):
        assert current_period().day == 1


class TestNormalizePeriod:
    """Test tolerant period parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("2024-06-01", date(2024, 6, 1)),
            (" 2024-06-01 ", date(2024, 6, 1)),
            ("2024-06-01T00:00:00Z", date(2024, 6, 1)),
            ("2024-06-01T00:00:00+00:00", date(2024, 6, 1)),
            ("2024-06-01T01:00:00+02:00", date(2024, 5, 31)),
            ("Sat, 01 Jun 2024 00:00:00 GMT", date(2024, 6, 1)),
            (date(2024, 6, 1), date(2024, 6, 1)),
            (datetime(2024, 6, 1, 12, 0), date(2024, 6, 1)),
        ],
    )
    def test_accepted_forms(self, value, expected):
        assert normalize_period(value, FALLBACK) == expected

    @pytest.mark.parametrize("value", [None, "", "   ", "not-a-date", "2024-13-01", 12345, object()])
    def test_unparsable_returns_fallback(self, value):
        assert normalize_period(value, FALLBACK) == FALLBACK


def test_period_iso():
    assert period_iso(date(2024, 6, 1)) == "2024-06-01"
