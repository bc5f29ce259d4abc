from __future__ import annotations

import bisect
import dataclasses
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from bybit_market_sync.core.events import EventChannel

SUPPORTED_INTERVALS: tuple[str, ...] = ("1", "3", "5", "15", "30", "60", "120", "240", "360", "720", "D", "W", "M")
DEFAULT_CAPACITY = 100
DEFAULT_VIEW_LIMIT = 50

logger = logging.getLogger(__name__)


class CandleKey(NamedTuple):
    symbol: str
    interval: str


@dataclass(frozen=True, slots=True)
class Candle:
    start_time: int
    end_time: int
    interval: str
    open: float
    high: float
    low: float
    close: float
    volume: float
    turnover: float
    confirmed: bool
    timestamp_ms: int | None = None

    @property
    def change(self) -> float:
        return self.close - self.open

    @property
    def change_percent(self) -> float:
        if self.open <= 0:
            return 0.0
        return (self.close - self.open) / self.open * 100.0

    @property
    def direction(self) -> str:
        return "bull" if self.close >= self.open else "bear"

    @property
    def status(self) -> str:
        return "closed" if self.confirmed else "updating"

    def as_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload.update(
            change=self.change,
            change_percent=self.change_percent,
            direction=self.direction,
            status=self.status,
        )
        return payload


@dataclass(frozen=True, slots=True)
class CandleView:
    key: CandleKey
    candles: tuple[Candle, ...]
    live: Candle | None
    closed_count: int

    @property
    def last_update(self) -> int | None:
        if not self.candles:
            return None
        return self.candles[-1].timestamp_ms


@dataclass(frozen=True, slots=True)
class CandleUpdate:
    key: CandleKey
    candle: Candle
    confirmed: bool
    view: CandleView


@dataclass(frozen=True, slots=True)
class OHLCStats:
    symbol: str
    interval: str
    price: float
    change: float
    change_percent: float
    high: float
    low: float
    volume: float
    last_update: int | None

    @property
    def direction(self) -> str:
        return "bull" if self.change >= 0 else "bear"


@dataclass(slots=True)
class CandleSeries:
    closed: list[Candle] = field(default_factory=list)
    live: Candle | None = None

    def index_of(self, start_time: int) -> int | None:
        starts = [candle.start_time for candle in self.closed]
        position = bisect.bisect_left(starts, start_time)
        if position < len(starts) and starts[position] == start_time:
            return position
        return None

    def upsert_closed(self, candle: Candle) -> None:
        starts = [item.start_time for item in self.closed]
        position = bisect.bisect_left(starts, candle.start_time)
        if position < len(starts) and starts[position] == candle.start_time:
            self.closed[position] = candle
        else:
            self.closed.insert(position, candle)

    def trim(self, capacity: int) -> None:
        if len(self.closed) > capacity:
            del self.closed[: len(self.closed) - capacity]


class CandleAggregator:
    """Merges live kline pushes with a bounded history of confirmed candles."""

    def __init__(self, *, capacity: int = DEFAULT_CAPACITY, view_limit: int = DEFAULT_VIEW_LIMIT) -> None:
        self._series: dict[CandleKey, CandleSeries] = {}
        self._capacity = capacity
        self._view_limit = view_limit
        self.updates: EventChannel[CandleUpdate] = EventChannel("candle_updated")

    @property
    def capacity(self) -> int:
        return self._capacity

    def apply_candle(self, symbol: str, interval: str, candle: Candle) -> CandleUpdate | None:
        key = CandleKey(symbol, interval)
        series = self._series.setdefault(key, CandleSeries())

        if candle.confirmed:
            self._apply_confirmed(key, series, candle)
        elif not self._apply_live(key, series, candle):
            return None

        update = CandleUpdate(
            key=key,
            candle=candle,
            confirmed=candle.confirmed,
            view=self._view(key, series, self._view_limit),
        )
        self.updates.publish(update)
        return update

    def _apply_confirmed(self, key: CandleKey, series: CandleSeries, candle: Candle) -> None:
        live = series.live
        if live is not None and live.start_time == candle.start_time:
            series.live = None
        elif live is not None and live.start_time < candle.start_time:
            logger.warning(
                "Dropping live candle whose confirmation was missed",
                extra={"symbol": key.symbol, "interval": key.interval, "start_time": live.start_time},
            )
            series.live = None

        series.upsert_closed(candle)
        series.trim(self._capacity)
        logger.debug(
            "Confirmed candle",
            extra={"symbol": key.symbol, "interval": key.interval, "start_time": candle.start_time},
        )

    def _apply_live(self, key: CandleKey, series: CandleSeries, candle: Candle) -> bool:
        index = series.index_of(candle.start_time)
        if index is not None:
            logger.warning(
                "Late update for an already closed candle; overwriting closed entry",
                extra={"symbol": key.symbol, "interval": key.interval, "start_time": candle.start_time},
            )
            series.closed[index] = dataclasses.replace(candle, confirmed=True)
            return True

        if series.closed and candle.start_time < series.closed[-1].start_time:
            logger.warning(
                "Dropping stale live candle older than closed history",
                extra={"symbol": key.symbol, "interval": key.interval, "start_time": candle.start_time},
            )
            return False

        series.live = candle
        return True

    def get_view(self, symbol: str, interval: str, limit: int | None = None) -> CandleView | None:
        key = CandleKey(symbol, interval)
        series = self._series.get(key)
        if series is None:
            return None
        return self._view(key, series, self._view_limit if limit is None else limit)

    def backfill(self, symbol: str, interval: str, candles: Iterable[Candle]) -> int:
        key = CandleKey(symbol, interval)
        series = self._series.setdefault(key, CandleSeries())
        if series.closed:
            logger.info(
                "Skipping backfill; series already holds closed candles",
                extra={"symbol": symbol, "interval": interval, "closed": len(series.closed)},
            )
            return 0

        live_start = series.live.start_time if series.live is not None else None
        for candle in sorted(candles, key=lambda item: item.start_time):
            if not candle.confirmed:
                continue
            if live_start is not None and candle.start_time >= live_start:
                continue
            series.upsert_closed(candle)
        series.trim(self._capacity)

        logger.info(
            "Backfilled candle history",
            extra={"symbol": symbol, "interval": interval, "seeded": len(series.closed)},
        )
        return len(series.closed)

    def latest_candle(self, symbol: str, interval: str) -> Candle | None:
        series = self._series.get(CandleKey(symbol, interval))
        if series is None:
            return None
        if series.live is not None:
            return series.live
        return series.closed[-1] if series.closed else None

    def ohlc_stats(self, symbol: str, interval: str, period: int = 24) -> OHLCStats | None:
        series = self._series.get(CandleKey(symbol, interval))
        if series is None or not series.closed:
            return None

        candles = series.closed[-period:]
        first = candles[0]
        latest = candles[-1]
        change = latest.close - first.open
        return OHLCStats(
            symbol=symbol,
            interval=interval,
            price=latest.close,
            change=change,
            change_percent=(change / first.open * 100.0) if first.open > 0 else 0.0,
            high=max(candle.high for candle in candles),
            low=min(candle.low for candle in candles),
            volume=sum(candle.volume for candle in candles),
            last_update=latest.timestamp_ms,
        )

    def clear(self, symbol: str | None = None, interval: str | None = None) -> None:
        if symbol is None:
            self._series.clear()
            return
        if interval is not None:
            self._series.pop(CandleKey(symbol, interval), None)
            return
        for key in [key for key in self._series if key.symbol == symbol]:
            del self._series[key]

    def keys(self) -> list[CandleKey]:
        return sorted(self._series)

    def stats(self) -> dict[CandleKey, dict[str, Any]]:
        return {
            key: {
                "closed_count": len(series.closed),
                "has_live": series.live is not None,
                "last_update": series.closed[-1].timestamp_ms if series.closed else None,
            }
            for key, series in self._series.items()
        }

    @staticmethod
    def _view(key: CandleKey, series: CandleSeries, limit: int) -> CandleView:
        closed = series.closed[-limit:] if limit > 0 else []
        candles = list(closed)
        if series.live is not None:
            candles.append(series.live)
        return CandleView(key=key, candles=tuple(candles), live=series.live, closed_count=len(series.closed))
