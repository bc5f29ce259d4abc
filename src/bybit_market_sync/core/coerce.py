from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any


def coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return int(normalized)
        except ValueError:
            try:
                return int(float(normalized))
            except ValueError:
                return None
    return None


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return float(normalized)
        except ValueError:
            return None
    return None


def coerce_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, str)):
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation:
            return None
    elif isinstance(value, float):
        parsed = Decimal(repr(value))
    else:
        return None
    if not parsed.is_finite():
        return None
    return parsed


def parse_levels(value: Any) -> tuple[tuple[Decimal, Decimal], ...]:
    """Parse ``[[price, size], ...]`` book levels, skipping malformed entries."""
    if not isinstance(value, list):
        return ()

    levels: list[tuple[Decimal, Decimal]] = []
    for level in value:
        if not isinstance(level, (list, tuple)) or len(level) < 2:
            continue
        price = coerce_decimal(level[0])
        size = coerce_decimal(level[1])
        if price is None or size is None:
            continue
        levels.append((price, size))
    return tuple(levels)
