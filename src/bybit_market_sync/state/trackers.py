from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Any

from bybit_market_sync.core.coerce import coerce_float, coerce_int
from bybit_market_sync.core.events import EventChannel
from bybit_market_sync.core.time_utils import now_ms

TICKER_FIELDS: tuple[str, ...] = (
    "lastPrice",
    "prevPrice24h",
    "price24hPcnt",
    "highPrice24h",
    "lowPrice24h",
    "volume24h",
    "turnover24h",
    "openInterestValue",
    "fundingRate",
)
DOMINANCE_RATIO = 1.2

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BigTrade:
    trade_id: str
    symbol: str
    side: str
    price: float
    size: float
    value: float
    trade_time: int
    is_block_trade: bool
    size_class: str
    received_at: int


@dataclass(frozen=True, slots=True)
class TradeStats:
    total_trades: int
    recent_trades: int
    total_value: float
    avg_value: float
    whales: int
    block_trades: int


@dataclass(frozen=True, slots=True)
class Liquidation:
    symbol: str
    side: str
    price: float
    volume: float
    value: float
    timestamp_ms: int


@dataclass(frozen=True, slots=True)
class LiquidationStats:
    symbol: str
    window_seconds: float
    total_count: int
    long_count: int
    short_count: int
    long_value: float
    short_value: float
    total_volume: float
    total_value: float
    average_price: float
    largest: Liquidation | None
    dominant_side: str


@dataclass(frozen=True, slots=True)
class Ticker:
    symbol: str
    fields: dict[str, str]
    timestamp_ms: int

    def get_float(self, name: str) -> float | None:
        return coerce_float(self.fields.get(name))


class TradeTracker:
    """Keeps the largest trade of each push batch when it clears a notional floor."""

    def __init__(
        self,
        *,
        min_trade_value: float = 50_000.0,
        whale_threshold: float = 500_000.0,
        block_trade_threshold: float = 1_000_000.0,
        max_trades: int = 100,
    ) -> None:
        self.min_trade_value = min_trade_value
        self._whale_threshold = whale_threshold
        self._block_trade_threshold = block_trade_threshold
        self._trades: deque[BigTrade] = deque(maxlen=max_trades)
        self.updates: EventChannel[BigTrade] = EventChannel("big_trade")

    def size_class(self, value: float) -> str:
        if value >= self._block_trade_threshold:
            return "block"
        if value >= self._whale_threshold:
            return "whale"
        if value >= 100_000:
            return "large"
        if value >= 50_000:
            return "medium"
        return "small"

    def ingest_batch(self, symbol: str, rows: list[dict[str, Any]], *, received_at: int | None = None) -> BigTrade | None:
        largest: BigTrade | None = None
        arrival = received_at if received_at is not None else now_ms()
        for row in rows:
            price = coerce_float(row.get("p"))
            size = coerce_float(row.get("v"))
            if price is None or size is None:
                continue
            value = price * size
            if value < self.min_trade_value or (largest is not None and value <= largest.value):
                continue
            largest = BigTrade(
                trade_id=str(row.get("i") or ""),
                symbol=str(row.get("s") or symbol),
                side=str(row.get("S") or ""),
                price=price,
                size=size,
                value=value,
                trade_time=coerce_int(row.get("T")) or arrival,
                is_block_trade=bool(row.get("BT", False)),
                size_class=self.size_class(value),
                received_at=arrival,
            )

        if largest is None:
            return None
        self._trades.appendleft(largest)
        self.updates.publish(largest)
        return largest

    def trades(self, min_value: float | None = None) -> list[BigTrade]:
        floor = self.min_trade_value if min_value is None else min_value
        return [trade for trade in self._trades if trade.value >= floor]

    def recent(self, window_ms: int = 300_000, *, now: int | None = None) -> list[BigTrade]:
        cutoff = (now if now is not None else now_ms()) - window_ms
        return [trade for trade in self._trades if trade.received_at > cutoff]

    def stats(self, *, now: int | None = None) -> TradeStats:
        recent = self.recent(now=now)
        total_value = sum(trade.value for trade in recent)
        return TradeStats(
            total_trades=len(self._trades),
            recent_trades=len(recent),
            total_value=total_value,
            avg_value=total_value / len(recent) if recent else 0.0,
            whales=sum(1 for trade in recent if trade.value >= self._whale_threshold),
            block_trades=sum(1 for trade in recent if trade.is_block_trade),
        )

    def clear(self) -> None:
        self._trades.clear()


class LiquidationTracker:
    def __init__(self, *, max_liquidations: int = 100) -> None:
        self._max_liquidations = max_liquidations
        self._liquidations: dict[str, deque[Liquidation]] = {}
        self.updates: EventChannel[Liquidation] = EventChannel("liquidation")

    def ingest(self, symbol: str, row: dict[str, Any]) -> Liquidation | None:
        price = coerce_float(row.get("p"))
        volume = coerce_float(row.get("v"))
        if price is None or volume is None:
            logger.debug("Dropping malformed liquidation row", extra={"symbol": symbol})
            return None

        # Bybit reports the side of the liquidated position's closing order.
        side = "Long" if row.get("S") == "Buy" else "Short"
        liquidation = Liquidation(
            symbol=symbol,
            side=side,
            price=price,
            volume=volume,
            value=price * volume,
            timestamp_ms=coerce_int(row.get("T")) or now_ms(),
        )
        history = self._liquidations.setdefault(symbol, deque(maxlen=self._max_liquidations))
        history.append(liquidation)
        self.updates.publish(liquidation)
        return liquidation

    def liquidations(self, symbol: str, limit: int = 50) -> list[Liquidation]:
        history = list(self._liquidations.get(symbol, ()))[-limit:]
        return sorted(history, key=lambda item: item.timestamp_ms, reverse=True)

    def stats(self, symbol: str, window_ms: int = 3_600_000, *, now: int | None = None) -> LiquidationStats:
        cutoff = (now if now is not None else now_ms()) - window_ms
        recent = [item for item in self._liquidations.get(symbol, ()) if item.timestamp_ms >= cutoff]
        longs = [item for item in recent if item.side == "Long"]
        shorts = [item for item in recent if item.side == "Short"]

        total_volume = sum(item.volume for item in recent)
        total_value = sum(item.value for item in recent)
        long_value = sum(item.value for item in longs)
        short_value = sum(item.value for item in shorts)

        dominant_side = "none"
        if recent and long_value > short_value * DOMINANCE_RATIO:
            dominant_side = "Long"
        elif recent and short_value > long_value * DOMINANCE_RATIO:
            dominant_side = "Short"

        return LiquidationStats(
            symbol=symbol,
            window_seconds=window_ms / 1000,
            total_count=len(recent),
            long_count=len(longs),
            short_count=len(shorts),
            long_value=long_value,
            short_value=short_value,
            total_volume=total_volume,
            total_value=total_value,
            average_price=total_value / total_volume if total_volume > 0 else 0.0,
            largest=max(recent, key=lambda item: item.value) if recent else None,
            dominant_side=dominant_side,
        )

    def clear(self, symbol: str | None = None) -> None:
        if symbol is None:
            self._liquidations.clear()
        else:
            self._liquidations.pop(symbol, None)


class TickerTracker:
    def __init__(self) -> None:
        self._tickers: dict[str, Ticker] = {}
        self.updates: EventChannel[Ticker] = EventChannel("ticker_updated")

    def apply_snapshot(self, symbol: str, data: dict[str, Any], *, timestamp_ms: int | None = None) -> Ticker:
        fields = {name: str(data.get(name) or "0") for name in TICKER_FIELDS}
        ticker = Ticker(symbol=symbol, fields=fields, timestamp_ms=timestamp_ms or now_ms())
        self._tickers[symbol] = ticker
        self.updates.publish(ticker)
        return ticker

    def apply_delta(self, symbol: str, data: dict[str, Any], *, timestamp_ms: int | None = None) -> Ticker:
        existing = self._tickers.get(symbol)
        if existing is None:
            return self.apply_snapshot(symbol, data, timestamp_ms=timestamp_ms)

        fields = dict(existing.fields)
        for name in TICKER_FIELDS:
            value = data.get(name)
            if value not in (None, ""):
                fields[name] = str(value)
        ticker = replace(existing, fields=fields, timestamp_ms=timestamp_ms or now_ms())
        self._tickers[symbol] = ticker
        self.updates.publish(ticker)
        return ticker

    def get(self, symbol: str) -> Ticker | None:
        return self._tickers.get(symbol)

    def clear(self, symbol: str | None = None) -> None:
        if symbol is None:
            self._tickers.clear()
        else:
            self._tickers.pop(symbol, None)
