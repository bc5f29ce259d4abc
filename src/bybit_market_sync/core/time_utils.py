from __future__ import annotations

from datetime import UTC, datetime

MINUTE_MS = 60_000
DAY_MS = 24 * 60 * MINUTE_MS
WEEK_MS = 7 * DAY_MS


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def interval_to_ms(interval: str) -> int | None:
    """Fixed bucket width for a Bybit kline interval; ``None`` for calendar months."""
    if interval == "D":
        return DAY_MS
    if interval == "W":
        return WEEK_MS
    if interval == "M":
        return None
    return int(interval) * MINUTE_MS


def candle_end_ms(start_ms: int, interval: str) -> int:
    width = interval_to_ms(interval)
    if width is not None:
        return start_ms + width - 1

    start = datetime.fromtimestamp(start_ms / 1000, tz=UTC)
    if start.month == 12:
        next_month = start.replace(year=start.year + 1, month=1)
    else:
        next_month = start.replace(month=start.month + 1)
    return int(next_month.timestamp() * 1000) - 1
