"""Billing period helpers.

A period is keyed by the first calendar day of a UTC month.
"""

import re
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def current_period(now: Optional[datetime] = None) -> date:
    """Return the first day of the current UTC month.

    Args:
        now: Reference instant. Defaults to the current time. Naive values
            are treated as UTC.

    Examples:
        >>> current_period(datetime(2024, 7, 5, 12, 0, tzinfo=timezone.utc))
        datetime.date(2024, 7, 1)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return date(now.year, now.month, 1)


def normalize_period(value: Any, fallback: date) -> date:
    """Normalize a stored period representation to a calendar date.

    Accepts ``date``/``datetime`` objects, ``YYYY-MM-DD`` strings and any
    ISO-8601 date-time string. Timezone-aware values are converted to UTC
    before truncating to the day. Never raises; unparsable input returns
    ``fallback``.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()

    if isinstance(value, date):
        return value

    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return fallback

        if _ISO_DATE.match(trimmed):
            try:
                return date.fromisoformat(trimmed)
            except ValueError:
                return fallback

        candidate = trimmed
        if candidate.endswith(("Z", "z")):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            # RFC 2822 style, e.g. "Mon, 01 Jul 2024 00:00:00 GMT"
            try:
                parsed = parsedate_to_datetime(trimmed)
            except (TypeError, ValueError, IndexError):
                return fallback
            if parsed is None:
                return fallback
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc)
        return parsed.date()

    return fallback


def period_iso(period: date) -> str:
    """Render a period the way it is embedded in job payloads."""
    return period.isoformat()
