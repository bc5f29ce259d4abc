from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from bybit_market_sync.core.events import EventChannel

DEFAULT_VIEW_DEPTH = 50
_HUNDRED = Decimal(100)

logger = logging.getLogger(__name__)


class OrderBookGapError(RuntimeError):
    """Raised when a delta skips ahead of the book's last update id."""

    def __init__(self, symbol: str, expected_update_id: int, received_update_id: int) -> None:
        super().__init__(
            f"Order book gap for {symbol}: expected update_id={expected_update_id}, got {received_update_id}"
        )
        self.symbol = symbol
        self.expected_update_id = expected_update_id
        self.received_update_id = received_update_id


@dataclass(frozen=True, slots=True)
class BookLevel:
    price: Decimal
    size: Decimal
    total: Decimal


@dataclass(frozen=True, slots=True)
class OrderBookView:
    symbol: str
    timestamp_ms: int
    sequence: int
    update_id: int | None
    bids: tuple[BookLevel, ...]
    asks: tuple[BookLevel, ...]
    spread: Decimal | None
    spread_percent: Decimal | None
    bid_count: int
    ask_count: int

    @property
    def best_bid(self) -> Decimal | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Decimal | None:
        return self.asks[0].price if self.asks else None


@dataclass(slots=True)
class OrderBook:
    symbol: str
    timestamp_ms: int
    sequence: int
    update_id: int | None = None
    bids: dict[Decimal, Decimal] = field(default_factory=dict)
    asks: dict[Decimal, Decimal] = field(default_factory=dict)


def _apply_levels(book_side: dict[Decimal, Decimal], levels: Iterable[tuple[Decimal, Decimal]]) -> None:
    for price, size in levels:
        if size <= 0:
            book_side.pop(price, None)
        else:
            book_side[price] = size


def _cumulative(levels: list[tuple[Decimal, Decimal]]) -> tuple[BookLevel, ...]:
    running = Decimal(0)
    result: list[BookLevel] = []
    for price, size in levels:
        running += size
        result.append(BookLevel(price=price, size=size, total=running))
    return tuple(result)


class OrderBookStore:
    """Per-symbol order books rebuilt from snapshot and delta pushes."""

    def __init__(self, *, view_depth: int = DEFAULT_VIEW_DEPTH, gap_detection: bool = True) -> None:
        self._books: dict[str, OrderBook] = {}
        self._view_depth = view_depth
        self._gap_detection = gap_detection
        self.updates: EventChannel[OrderBookView] = EventChannel("order_book_updated")

    def apply_snapshot(
        self,
        symbol: str,
        bids: Iterable[tuple[Decimal, Decimal]],
        asks: Iterable[tuple[Decimal, Decimal]],
        *,
        timestamp_ms: int,
        sequence: int | None = None,
        update_id: int | None = None,
    ) -> OrderBookView:
        book = OrderBook(
            symbol=symbol,
            timestamp_ms=timestamp_ms,
            sequence=sequence or 0,
            update_id=update_id,
            bids={price: size for price, size in bids if size > 0},
            asks={price: size for price, size in asks if size > 0},
        )
        self._books[symbol] = book
        view = self._view(book, self._view_depth)
        self.updates.publish(view)
        return view

    def apply_delta(
        self,
        symbol: str,
        bids: Iterable[tuple[Decimal, Decimal]],
        asks: Iterable[tuple[Decimal, Decimal]],
        *,
        timestamp_ms: int,
        sequence: int | None = None,
        update_id: int | None = None,
    ) -> OrderBookView | None:
        book = self._books.get(symbol)
        if book is None:
            logger.warning("No order book snapshot yet; dropping delta", extra={"symbol": symbol})
            return None

        if self._gap_detection and update_id is not None and book.update_id is not None:
            if update_id <= book.update_id:
                logger.debug(
                    "Dropping stale order book delta",
                    extra={"symbol": symbol, "update_id": update_id, "book_update_id": book.update_id},
                )
                return None
            expected = book.update_id + 1
            if update_id != expected:
                del self._books[symbol]
                raise OrderBookGapError(symbol, expected, update_id)

        _apply_levels(book.bids, bids)
        _apply_levels(book.asks, asks)
        book.timestamp_ms = timestamp_ms
        book.sequence = sequence if sequence is not None else book.sequence + 1
        if update_id is not None:
            book.update_id = update_id

        view = self._view(book, self._view_depth)
        self.updates.publish(view)
        return view

    def query(self, symbol: str, depth: int | None = None) -> OrderBookView | None:
        book = self._books.get(symbol)
        if book is None:
            return None
        return self._view(book, self._view_depth if depth is None else depth)

    def has_book(self, symbol: str) -> bool:
        return symbol in self._books

    def symbols(self) -> list[str]:
        return sorted(self._books)

    def clear(self, symbol: str | None = None) -> None:
        if symbol is None:
            self._books.clear()
        else:
            self._books.pop(symbol, None)

    def stats(self) -> dict[str, dict[str, int | None]]:
        return {
            symbol: {
                "bid_count": len(book.bids),
                "ask_count": len(book.asks),
                "last_update": book.timestamp_ms,
                "sequence": book.sequence,
                "update_id": book.update_id,
            }
            for symbol, book in self._books.items()
        }

    @staticmethod
    def _view(book: OrderBook, depth: int) -> OrderBookView:
        depth = max(0, depth)
        bids = _cumulative(sorted(book.bids.items(), key=lambda item: item[0], reverse=True)[:depth])
        asks = _cumulative(sorted(book.asks.items(), key=lambda item: item[0])[:depth])

        spread: Decimal | None = None
        spread_percent: Decimal | None = None
        if bids and asks:
            spread = asks[0].price - bids[0].price
            if bids[0].price > 0:
                spread_percent = spread / bids[0].price * _HUNDRED

        return OrderBookView(
            symbol=book.symbol,
            timestamp_ms=book.timestamp_ms,
            sequence=book.sequence,
            update_id=book.update_id,
            bids=bids,
            asks=asks,
            spread=spread,
            spread_percent=spread_percent,
            bid_count=len(book.bids),
            ask_count=len(book.asks),
        )
