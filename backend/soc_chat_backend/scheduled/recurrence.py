"""Calendar arithmetic for recurring scheduled messages."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

RECURRING_PATTERNS = ("daily", "weekly", "monthly", "yearly")

_PERIODS = {
    "daily": relativedelta(days=1),
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}


def normalize_pattern(pattern: Optional[str]) -> Optional[str]:
    """Return the canonical pattern name, ``None`` for one-shot schedules.

    Raises ValueError for anything that is not a known pattern.
    """

    if pattern is None:
        return None
    cleaned = str(pattern).strip().lower()
    if not cleaned or cleaned == "none":
        return None
    if cleaned not in _PERIODS:
        raise ValueError(
            f"Unsupported recurring pattern '{pattern}'. "
            f"Expected one of: {', '.join(RECURRING_PATTERNS)}"
        )
    return cleaned


def occurrence(anchor: datetime, pattern: str, index: int) -> datetime:
    """Return the ``index``-th occurrence of a schedule starting at ``anchor``.

    Offsets are always applied to the anchor, never chained, so a monthly
    schedule anchored on the 31st lands on the last day of short months and
    returns to the 31st afterwards.
    """

    if index < 0:
        raise ValueError("index must be non-negative")
    period = _PERIODS[normalize_pattern(pattern) or "daily"]
    return anchor + period * index


def next_occurrence(
    anchor: datetime,
    pattern: str,
    delivered_count: int,
    *,
    after: Optional[datetime] = None,
) -> tuple[datetime, int]:
    """Return ``(next_time, index)`` for the first occurrence past the delivered ones.

    When ``after`` is given, occurrences at or before it are skipped so a
    schedule that missed several periods resumes in the future instead of
    firing once per sweep to catch up.
    """

    index = max(delivered_count, 0) + 1
    candidate = occurrence(anchor, pattern, index)
    if after is not None:
        while candidate <= after:
            index += 1
            candidate = occurrence(anchor, pattern, index)
    return candidate, index
