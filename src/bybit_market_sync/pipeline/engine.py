from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from bybit_market_sync.core.config import Settings
from bybit_market_sync.core.enums import ConnectionState
from bybit_market_sync.core.events import EventChannel
from bybit_market_sync.pipeline.router import (
    MessageRouter,
    kline_topic,
    liquidation_topic,
    orderbook_topic,
    parse_topic,
    ticker_topic,
    trade_topic,
)
from bybit_market_sync.sources.rest import BybitAPIError, BybitRESTClient
from bybit_market_sync.sources.websocket import StreamConnection
from bybit_market_sync.state.candles import SUPPORTED_INTERVALS, CandleAggregator, CandleUpdate, CandleView
from bybit_market_sync.state.orderbook import OrderBookGapError, OrderBookStore, OrderBookView
from bybit_market_sync.state.trackers import (
    BigTrade,
    Liquidation,
    LiquidationTracker,
    Ticker,
    TickerTracker,
    TradeTracker,
)

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{3,}USDT?$|^[A-Z0-9]{3,}USDC$|^[A-Z0-9]{3,}USD$")

ConnectionFactory = Callable[[str], StreamConnection]
RestClientFactory = Callable[[str], BybitRESTClient]

logger = logging.getLogger(__name__)


def is_valid_symbol(symbol: str) -> bool:
    return bool(symbol) and SYMBOL_PATTERN.match(symbol) is not None


def build_topics(symbol: str, interval: str, *, orderbook_depth: int) -> list[str]:
    return [
        orderbook_topic(symbol, orderbook_depth),
        kline_topic(symbol, interval),
        trade_topic(symbol),
        liquidation_topic(symbol),
        ticker_topic(symbol),
    ]


@dataclass(frozen=True, slots=True)
class MarketEvents:
    """Consumer-facing channels, one per event kind."""

    order_book_updated: EventChannel[OrderBookView]
    candle_updated: EventChannel[CandleUpdate]
    candle_backfilled: EventChannel[CandleView]
    connection_state_changed: EventChannel[ConnectionState]
    permanent_failure: EventChannel[None]
    transient_error: EventChannel[str]
    big_trade: EventChannel[BigTrade]
    liquidation: EventChannel[Liquidation]
    ticker_updated: EventChannel[Ticker]


class MarketSyncEngine:
    """Keeps one symbol/interval pair synchronised from the Bybit public stream."""

    def __init__(
        self,
        settings: Settings,
        *,
        rest_client_factory: RestClientFactory | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self._settings = settings
        self._symbol = settings.symbol.upper()
        self._interval = settings.interval
        self._testnet = settings.testnet
        self._rest_factory = rest_client_factory or self._default_rest_client
        self._connection_factory = connection_factory or self._default_connection
        self._background: set[asyncio.Task[Any]] = set()
        self._started = False

        self.order_books = OrderBookStore(
            view_depth=settings.orderbook_view_depth,
            gap_detection=settings.orderbook_gap_detection,
        )
        self.candles = CandleAggregator(capacity=settings.max_candles, view_limit=settings.candle_view_limit)
        self.trades = TradeTracker(
            min_trade_value=settings.big_trade_min_value,
            whale_threshold=settings.whale_threshold,
            block_trade_threshold=settings.block_trade_threshold,
            max_trades=settings.max_trades,
        )
        self.liquidations = LiquidationTracker(max_liquidations=settings.max_liquidations)
        self.tickers = TickerTracker()
        self.router = MessageRouter(
            order_books=self.order_books,
            candles=self.candles,
            trades=self.trades,
            liquidations=self.liquidations,
            tickers=self.tickers,
        )

        self.events = MarketEvents(
            order_book_updated=self.order_books.updates,
            candle_updated=self.candles.updates,
            candle_backfilled=EventChannel("candle_backfilled"),
            connection_state_changed=EventChannel("connection_state_changed"),
            permanent_failure=EventChannel("permanent_failure"),
            transient_error=EventChannel("transient_error"),
            big_trade=self.trades.updates,
            liquidation=self.liquidations.updates,
            ticker_updated=self.tickers.updates,
        )

        venue = self._venue_settings()
        self._rest = self._rest_factory(venue.rest_url)
        self.connection = self._attach(self._connection_factory(venue.stream_url))

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def interval(self) -> str:
        return self._interval

    @property
    def testnet(self) -> bool:
        return self._testnet

    def topics(self) -> list[str]:
        return build_topics(self._symbol, self._interval, orderbook_depth=self._settings.orderbook_depth)

    def status(self) -> dict[str, Any]:
        connection = self.connection.status()
        return {
            "connected": connection["connected"],
            "state": connection["state"],
            "symbol": self._symbol,
            "interval": self._interval,
            "testnet": self._testnet,
            "subscriptions": connection["subscriptions"],
            "reconnect_attempts": connection["reconnect_attempts"],
        }

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for topic in self.topics():
            await self.connection.subscribe(topic)
        self.connection.start()
        if self._settings.backfill_on_start:
            self._spawn(self.backfill_candles(self._symbol, self._interval))

    async def close(self) -> None:
        self._started = False
        await self.connection.close()
        await self._cancel_background()
        await self._rest.close()

    async def change_symbol(self, symbol: str) -> bool:
        new_symbol = symbol.upper()
        if new_symbol == self._symbol:
            return True
        if not is_valid_symbol(new_symbol):
            logger.warning("Rejected invalid symbol", extra={"symbol": new_symbol})
            self.events.transient_error.publish(
                f"Invalid symbol: {new_symbol}. Please use format like BTCUSDT, ETHUSDT"
            )
            return False

        logger.info("Changing symbol", extra={"previous": self._symbol, "symbol": new_symbol})
        for topic in self.topics():
            await self.connection.unsubscribe(topic)

        previous = self._symbol
        self._symbol = new_symbol
        for cleared in (previous, new_symbol):
            self.order_books.clear(cleared)
            self.candles.clear(cleared)
            self.liquidations.clear(cleared)
            self.tickers.clear(cleared)
        self.trades.clear()

        for topic in self.topics():
            await self.connection.subscribe(topic)
        if self._started and self._settings.backfill_on_start:
            self._spawn(self.backfill_candles(self._symbol, self._interval))
        return True

    async def change_interval(self, interval: str) -> bool:
        if interval == self._interval:
            return True
        if interval not in SUPPORTED_INTERVALS:
            logger.warning("Rejected unsupported interval", extra={"interval": interval})
            self.events.transient_error.publish(f"Unsupported interval: {interval}")
            return False

        logger.info("Changing interval", extra={"previous": self._interval, "interval": interval})
        await self.connection.unsubscribe(kline_topic(self._symbol, self._interval))
        self.candles.clear(self._symbol, self._interval)
        self._interval = interval
        self.candles.clear(self._symbol, self._interval)
        await self.connection.subscribe(kline_topic(self._symbol, self._interval))
        if self._started and self._settings.backfill_on_start:
            self._spawn(self.backfill_candles(self._symbol, self._interval))
        return True

    async def set_testnet(self, testnet: bool) -> None:
        if testnet == self._testnet:
            return

        logger.info("Switching venue mode", extra={"testnet": testnet})
        await self.connection.close()
        await self._cancel_background()
        await self._rest.close()
        self._testnet = testnet
        self.order_books.clear()
        self.candles.clear()
        self.liquidations.clear()
        self.tickers.clear()
        self.trades.clear()

        venue = self._venue_settings()
        self._rest = self._rest_factory(venue.rest_url)
        self.connection = self._attach(self._connection_factory(venue.stream_url))
        if self._started:
            self._started = False
            await self.start()

    async def backfill_candles(self, symbol: str, interval: str) -> int:
        testnet = self._testnet
        try:
            history = await self._rest.fetch_klines(symbol, interval, limit=self._settings.backfill_limit)
        except (httpx.HTTPError, BybitAPIError) as exc:
            logger.warning(
                "Candle backfill failed",
                extra={"symbol": symbol, "interval": interval, "error": exc.__class__.__name__},
            )
            self.events.transient_error.publish(f"Candle backfill failed for {symbol} {interval}: {exc}")
            return 0

        if (symbol, interval, testnet) != (self._symbol, self._interval, self._testnet):
            logger.info("Discarding backfill for a stale selection", extra={"symbol": symbol, "interval": interval})
            return 0

        seeded = self.candles.backfill(symbol, interval, history)
        view = self.candles.get_view(symbol, interval)
        if seeded and view is not None:
            self.events.candle_backfilled.publish(view)
        return seeded

    def _attach(self, connection: StreamConnection) -> StreamConnection:
        connection.messages.subscribe(self._on_message)
        connection.state_changes.subscribe(self._on_state_change)
        connection.transient_errors.subscribe(self.events.transient_error.publish)
        connection.permanent_failure.subscribe(self.events.permanent_failure.publish)
        return connection

    def _on_message(self, message: dict[str, Any]) -> None:
        try:
            self.router.process_message(message)
        except OrderBookGapError as exc:
            logger.warning(
                "Order book sequence gap; resubscribing for a fresh snapshot",
                extra={
                    "symbol": exc.symbol,
                    "expected_update_id": exc.expected_update_id,
                    "update_id": exc.received_update_id,
                },
            )
            topic = message.get("topic")
            if isinstance(topic, str):
                self._spawn(self._resync_topic(topic))

    def _on_state_change(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            # the replayed subscriptions deliver fresh snapshots
            self.order_books.clear()
        self.events.connection_state_changed.publish(state)

    async def _resync_topic(self, topic: str) -> None:
        parsed = parse_topic(topic)
        if parsed is None or parsed.symbol != self._symbol:
            return
        await self.connection.unsubscribe(topic)
        await self.connection.subscribe(topic)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed", exc_info=exc)

    async def _cancel_background(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

    def _venue_settings(self) -> Settings:
        return self._settings.model_copy(update={"testnet": self._testnet})

    def _default_rest_client(self, base_url: str) -> BybitRESTClient:
        return BybitRESTClient(
            base_url=base_url,
            timeout_seconds=self._settings.rest_timeout_seconds,
            retries=self._settings.rest_max_retries,
            category=self._settings.category,
        )

    def _default_connection(self, url: str) -> StreamConnection:
        return StreamConnection(
            url,
            ping_interval_seconds=self._settings.ping_interval_seconds,
            pong_timeout_seconds=self._settings.pong_timeout_seconds,
            reconnect_base_seconds=self._settings.reconnect_base_seconds,
            reconnect_max_seconds=self._settings.reconnect_max_seconds,
            max_reconnect_attempts=self._settings.max_reconnect_attempts,
        )
