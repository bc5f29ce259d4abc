from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from bybit_market_sync.core.config import Settings
from bybit_market_sync.core.enums import ConnectionState
from bybit_market_sync.core.logging import configure_logging
from bybit_market_sync.core.time_utils import now_ms
from bybit_market_sync.pipeline.engine import MarketSyncEngine, build_topics, is_valid_symbol
from bybit_market_sync.sources.rest import BybitRESTClient
from bybit_market_sync.state.candles import SUPPORTED_INTERVALS, Candle, CandleUpdate, CandleView
from bybit_market_sync.state.orderbook import OrderBookView
from bybit_market_sync.state.trackers import BigTrade, Liquidation

app = typer.Typer(help="Bybit market-data synchronisation CLI")
console = Console()


def _build_settings(
    *,
    symbol: str | None = None,
    interval: str | None = None,
    testnet: bool | None = None,
) -> Settings:
    overrides: dict[str, object] = {}
    if symbol is not None:
        normalized = symbol.strip().upper()
        if not is_valid_symbol(normalized):
            raise typer.BadParameter(f"Invalid symbol: {normalized}. Use a format like BTCUSDT or ETHUSDT.")
        overrides["symbol"] = normalized
    if interval is not None:
        if interval not in SUPPORTED_INTERVALS:
            raise typer.BadParameter(f"interval must be one of {', '.join(SUPPORTED_INTERVALS)}")
        overrides["interval"] = interval
    if testnet is not None:
        overrides["testnet"] = testnet
    return Settings(**overrides)


def _format_ms(value_ms: int | None) -> str:
    if value_ms is None:
        return "-"
    return datetime.fromtimestamp(value_ms / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


def _format_decimal(value: Decimal | None, places: int = 4) -> str:
    if value is None:
        return "-"
    return f"{value:.{places}f}"


def _book_summary(view: OrderBookView) -> str:
    return (
        f"{view.symbol} bid={_format_decimal(view.best_bid, 2)} ask={_format_decimal(view.best_ask, 2)} "
        f"spread={_format_decimal(view.spread, 2)} ({_format_decimal(view.spread_percent)}%) "
        f"levels={view.bid_count}/{view.ask_count} seq={view.sequence}"
    )


def _candle_row(candle: Candle) -> list[str]:
    return [
        _format_ms(candle.start_time),
        f"{candle.open:g}",
        f"{candle.high:g}",
        f"{candle.low:g}",
        f"{candle.close:g}",
        f"{candle.volume:g}",
        f"{candle.change_percent:+.2f}%",
        candle.direction,
        candle.status,
    ]


def _candle_table(title: str, candles: list[Candle] | tuple[Candle, ...]) -> Table:
    table = Table(title=title)
    for column in ("start (UTC)", "open", "high", "low", "close", "volume", "change", "dir", "status"):
        table.add_column(column)
    for candle in candles:
        table.add_row(*_candle_row(candle))
    return table


class _StreamPrinter:
    def __init__(self, *, book_interval_ms: int = 1_000) -> None:
        self._book_interval_ms = book_interval_ms
        self._last_book_print_ms = 0

    def on_book(self, view: OrderBookView) -> None:
        current = now_ms()
        if current - self._last_book_print_ms < self._book_interval_ms:
            return
        self._last_book_print_ms = current
        console.print(f"[cyan]book[/cyan] {_book_summary(view)}")

    def on_candle(self, update: CandleUpdate) -> None:
        if not update.confirmed:
            return
        candle = update.candle
        console.print(
            f"[green]candle[/green] {update.key.symbol} {update.key.interval} {_format_ms(candle.start_time)} "
            f"close={candle.close:g} {candle.direction} ({len(update.view.candles)} in view)"
        )

    def on_backfill(self, view: CandleView) -> None:
        console.print(f"[green]backfill[/green] {view.key.symbol} {view.key.interval} closed={view.closed_count}")

    def on_trade(self, trade: BigTrade) -> None:
        console.print(
            f"[magenta]trade[/magenta] {trade.symbol} {trade.side} {trade.size:g} @ {trade.price:g} "
            f"value={trade.value:,.0f} ({trade.size_class})"
        )

    def on_liquidation(self, liquidation: Liquidation) -> None:
        console.print(
            f"[red]liquidation[/red] {liquidation.symbol} {liquidation.side} {liquidation.volume:g} "
            f"@ {liquidation.price:g} value={liquidation.value:,.0f}"
        )

    def on_state(self, state: ConnectionState) -> None:
        console.print(f"[bold]connection[/bold] {state.value}")

    def on_error(self, message: str) -> None:
        console.print(f"[yellow]warning[/yellow] {message}")


async def _run_stream(settings: Settings, *, duration: float | None) -> bool:
    engine = MarketSyncEngine(settings=settings)
    printer = _StreamPrinter()
    failed = asyncio.Event()

    events = engine.events
    events.order_book_updated.subscribe(printer.on_book)
    events.candle_updated.subscribe(printer.on_candle)
    events.candle_backfilled.subscribe(printer.on_backfill)
    events.big_trade.subscribe(printer.on_trade)
    events.liquidation.subscribe(printer.on_liquidation)
    events.connection_state_changed.subscribe(printer.on_state)
    events.transient_error.subscribe(printer.on_error)
    events.permanent_failure.subscribe(lambda _: failed.set())

    await engine.start()
    try:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(failed.wait(), timeout=duration)
    finally:
        await engine.close()
    return not failed.is_set()


async def _fetch_candles(settings: Settings, *, limit: int) -> list[Candle]:
    rest = BybitRESTClient(
        base_url=settings.rest_url,
        timeout_seconds=settings.rest_timeout_seconds,
        retries=settings.rest_max_retries,
        category=settings.category,
    )
    try:
        return await rest.fetch_klines(settings.symbol, settings.interval, limit=limit)
    finally:
        await rest.close()


@app.command("stream")
def stream(
    symbol: str | None = typer.Option(default=None, help="Symbol such as BTCUSDT"),
    interval: str | None = typer.Option(default=None, help="Kline interval (1, 5, 60, D, ...)"),
    testnet: bool | None = typer.Option(default=None, help="Use the Bybit testnet stream"),
    duration: float | None = typer.Option(default=None, min=1.0, help="Stop after this many seconds"),
) -> None:
    settings = _build_settings(symbol=symbol, interval=interval, testnet=testnet)
    configure_logging(settings.log_level)
    console.print(
        f"Streaming [bold]{settings.symbol}[/bold] interval={settings.interval} "
        f"mode={'testnet' if settings.testnet else 'mainnet'}"
    )

    try:
        healthy = asyncio.run(_run_stream(settings, duration=duration))
    except KeyboardInterrupt:
        console.print("Shutting down")
        return

    if not healthy:
        console.print("[red]Connection to Bybit failed permanently.[/red]")
        raise typer.Exit(code=1)


@app.command("candles")
def candles(
    symbol: str | None = typer.Option(default=None),
    interval: str | None = typer.Option(default=None),
    testnet: bool | None = typer.Option(default=None),
    limit: int = typer.Option(default=20, min=1, max=1000),
) -> None:
    settings = _build_settings(symbol=symbol, interval=interval, testnet=testnet)
    configure_logging(settings.log_level)
    history = asyncio.run(_fetch_candles(settings, limit=limit))
    console.print(_candle_table(f"{settings.symbol} {settings.interval}", history))


@app.command("topics")
def topics(
    symbol: str | None = typer.Option(default=None),
    interval: str | None = typer.Option(default=None),
) -> None:
    settings = _build_settings(symbol=symbol, interval=interval)
    for topic in build_topics(settings.symbol, settings.interval, orderbook_depth=settings.orderbook_depth):
        console.print(topic)


@app.command("show-config")
def show_config() -> None:
    settings = Settings()
    table = Table(title="Effective settings")
    table.add_column("setting")
    table.add_column("value")
    for name, value in settings.model_dump().items():
        table.add_row(name, str(value))
    table.add_row("stream_url (effective)", settings.stream_url)
    table.add_row("rest_url (effective)", settings.rest_url)
    console.print(table)


if __name__ == "__main__":
    app()
