from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime


def exponential_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """``base * 2**attempt`` capped at ``max_seconds``; ``attempt`` counts from zero."""
    return min(base_seconds * (2 ** max(attempt, 0)), max_seconds)


def parse_retry_after(raw_value: str | None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if raw_value is None:
        return None

    raw_value = raw_value.strip()
    try:
        return max(0.0, float(raw_value))
    except ValueError:
        pass

    try:
        parsed = parsedate_to_datetime(raw_value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return max(0.0, (parsed - datetime.now(tz=UTC)).total_seconds())
