from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from bybit_market_sync.core.coerce import coerce_float, coerce_int, parse_levels
from bybit_market_sync.core.enums import BookMessageType
from bybit_market_sync.core.time_utils import candle_end_ms, now_ms
from bybit_market_sync.state.candles import Candle, CandleAggregator
from bybit_market_sync.state.orderbook import OrderBookStore
from bybit_market_sync.state.trackers import LiquidationTracker, TickerTracker, TradeTracker

CATEGORY_ORDERBOOK = "orderbook"
CATEGORY_KLINE = "kline"
CATEGORY_TRADE = "publicTrade"
CATEGORY_LIQUIDATION = "allLiquidation"
CATEGORY_TICKER = "tickers"

MessageHandler = Callable[["Topic", dict[str, Any]], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Topic:
    category: str
    params: tuple[str, ...]
    symbol: str

    def __str__(self) -> str:
        return ".".join((self.category, *self.params, self.symbol))


def parse_topic(topic: str) -> Topic | None:
    """Split ``<category>.<param...>.<symbol>``; ``None`` when there is no symbol part."""
    parts = topic.split(".")
    if len(parts) < 2 or not all(parts):
        return None
    return Topic(category=parts[0], params=tuple(parts[1:-1]), symbol=parts[-1])


def orderbook_topic(symbol: str, depth: int) -> str:
    return f"{CATEGORY_ORDERBOOK}.{depth}.{symbol}"


def kline_topic(symbol: str, interval: str) -> str:
    return f"{CATEGORY_KLINE}.{interval}.{symbol}"


def trade_topic(symbol: str) -> str:
    return f"{CATEGORY_TRADE}.{symbol}"


def liquidation_topic(symbol: str) -> str:
    return f"{CATEGORY_LIQUIDATION}.{symbol}"


def ticker_topic(symbol: str) -> str:
    return f"{CATEGORY_TICKER}.{symbol}"


def parse_candle(row: dict[str, Any], interval: str) -> Candle | None:
    start = coerce_int(row.get("start"))
    open_ = coerce_float(row.get("open"))
    high = coerce_float(row.get("high"))
    low = coerce_float(row.get("low"))
    close = coerce_float(row.get("close"))
    if start is None or open_ is None or high is None or low is None or close is None:
        return None

    end = coerce_int(row.get("end"))
    return Candle(
        start_time=start,
        end_time=end if end is not None else candle_end_ms(start, interval),
        interval=str(row.get("interval") or interval),
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=coerce_float(row.get("volume")) or 0.0,
        turnover=coerce_float(row.get("turnover")) or 0.0,
        confirmed=row.get("confirm") is True,
        timestamp_ms=coerce_int(row.get("timestamp")) or now_ms(),
    )


class MessageRouter:
    """Dispatch Bybit public stream messages by topic category."""

    def __init__(
        self,
        *,
        order_books: OrderBookStore,
        candles: CandleAggregator,
        trades: TradeTracker | None = None,
        liquidations: LiquidationTracker | None = None,
        tickers: TickerTracker | None = None,
    ) -> None:
        self._order_books = order_books
        self._candles = candles
        self._trades = trades
        self._liquidations = liquidations
        self._tickers = tickers
        self._handlers: dict[str, MessageHandler] = {
            CATEGORY_ORDERBOOK: self._process_orderbook,
            CATEGORY_KLINE: self._process_kline,
        }
        if trades is not None:
            self._handlers[CATEGORY_TRADE] = self._process_trades
        if liquidations is not None:
            self._handlers[CATEGORY_LIQUIDATION] = self._process_liquidations
        if tickers is not None:
            self._handlers[CATEGORY_TICKER] = self._process_ticker

    @property
    def categories(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, category: str, handler: MessageHandler) -> None:
        self._handlers[category] = handler

    def process_message(self, message: dict[str, Any]) -> bool:
        raw_topic = message.get("topic")
        if not isinstance(raw_topic, str):
            return False

        topic = parse_topic(raw_topic)
        if topic is None:
            logger.warning("Dropping message with malformed topic", extra={"topic": raw_topic})
            return False

        handler = self._handlers.get(topic.category)
        if handler is None:
            logger.debug("No handler for topic category", extra={"topic": raw_topic})
            return False

        handler(topic, message)
        return True

    def _process_orderbook(self, topic: Topic, message: dict[str, Any]) -> None:
        data = message.get("data")
        if not isinstance(data, dict):
            logger.warning("Dropping order book message without data object", extra={"topic": str(topic)})
            return

        symbol = str(data.get("s") or topic.symbol)
        bids = parse_levels(data.get("b"))
        asks = parse_levels(data.get("a"))
        timestamp_ms = coerce_int(message.get("ts")) or now_ms()
        sequence = coerce_int(data.get("seq"))
        update_id = coerce_int(data.get("u"))

        message_type = message.get("type")
        if message_type == BookMessageType.SNAPSHOT:
            self._order_books.apply_snapshot(
                symbol, bids, asks, timestamp_ms=timestamp_ms, sequence=sequence, update_id=update_id
            )
        elif message_type == BookMessageType.DELTA:
            self._order_books.apply_delta(
                symbol, bids, asks, timestamp_ms=timestamp_ms, sequence=sequence, update_id=update_id
            )
        else:
            logger.warning(
                "Dropping order book message of unknown type",
                extra={"topic": str(topic), "type": message_type},
            )

    def _process_kline(self, topic: Topic, message: dict[str, Any]) -> None:
        data = message.get("data")
        if not topic.params or not isinstance(data, list) or not data:
            logger.warning("Dropping malformed kline message", extra={"topic": str(topic)})
            return

        interval = topic.params[0]
        for row in data:
            if not isinstance(row, dict):
                continue
            candle = parse_candle(row, interval)
            if candle is None:
                logger.warning("Dropping kline row with missing prices", extra={"topic": str(topic)})
                continue
            self._candles.apply_candle(topic.symbol, interval, candle)

    def _process_trades(self, topic: Topic, message: dict[str, Any]) -> None:
        data = message.get("data")
        if self._trades is None or not isinstance(data, list):
            return
        rows = [row for row in data if isinstance(row, dict)]
        self._trades.ingest_batch(topic.symbol, rows)

    def _process_liquidations(self, topic: Topic, message: dict[str, Any]) -> None:
        data = message.get("data")
        if self._liquidations is None:
            return
        rows = data if isinstance(data, list) else [data]
        for row in rows:
            if isinstance(row, dict):
                self._liquidations.ingest(str(row.get("s") or topic.symbol), row)

    def _process_ticker(self, topic: Topic, message: dict[str, Any]) -> None:
        data = message.get("data")
        if self._tickers is None or not isinstance(data, dict):
            return
        timestamp_ms = coerce_int(message.get("ts"))
        if message.get("type") == BookMessageType.DELTA:
            self._tickers.apply_delta(topic.symbol, data, timestamp_ms=timestamp_ms)
        else:
            self._tickers.apply_snapshot(topic.symbol, data, timestamp_ms=timestamp_ms)
