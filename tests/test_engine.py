from __future__ import annotations

from typing import Any

import httpx
import pytest
from websockets.exceptions import ConnectionClosedOK

from bybit_market_sync.core.config import Settings
from bybit_market_sync.core.enums import ConnectionState
from bybit_market_sync.pipeline.engine import MarketSyncEngine, build_topics, is_valid_symbol
from bybit_market_sync.sources.rest import BybitRESTClient
from bybit_market_sync.sources.websocket import StreamConnection
from bybit_market_sync.state.candles import CandleView

MINUTE_MS = 60_000


def _settings(**overrides: Any) -> Settings:
    options: dict[str, Any] = {
        "symbol": "BTCUSDT",
        "interval": "1",
        "reconnect_base_seconds": 0.01,
        "reconnect_max_seconds": 0.05,
        "backfill_on_start": False,
    }
    options.update(overrides)
    return Settings(**options)


def _kline_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        status_code=200,
        request=request,
        json={
            "retCode": 0,
            "retMsg": "OK",
            "result": {
                "list": [
                    [str(MINUTE_MS), "11", "12", "10", "12", "2", "24"],
                    ["0", "10", "11", "9", "11", "1", "11"],
                ]
            },
        },
    )


def _engine(
    settings: Settings, connector: Any, handler: Any = _kline_handler, rest_hosts: list[str] | None = None
) -> tuple[MarketSyncEngine, list[str]]:
    urls: list[str] = []
    hosts = rest_hosts if rest_hosts is not None else []

    def factory(url: str) -> StreamConnection:
        urls.append(url)
        return StreamConnection(
            url,
            ping_interval_seconds=10.0,
            reconnect_base_seconds=settings.reconnect_base_seconds,
            reconnect_max_seconds=settings.reconnect_max_seconds,
            connect=connector,
        )

    def recording(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return handler(request)

    def rest_factory(base_url: str) -> BybitRESTClient:
        return BybitRESTClient(base_url=base_url, transport=httpx.MockTransport(recording))

    engine = MarketSyncEngine(settings, rest_client_factory=rest_factory, connection_factory=factory)
    return engine, urls


def _snapshot(update_id: int) -> dict[str, Any]:
    return {
        "topic": "orderbook.50.BTCUSDT",
        "type": "snapshot",
        "ts": 1,
        "data": {"s": "BTCUSDT", "b": [["100", "1"]], "a": [["101", "1"]], "u": update_id, "seq": 1},
    }


def test_symbol_validation_and_topics() -> None:
    assert is_valid_symbol("BTCUSDT")
    assert is_valid_symbol("ETHUSDC")
    assert not is_valid_symbol("btc")
    assert not is_valid_symbol("")
    assert build_topics("ETHUSDT", "15", orderbook_depth=50) == [
        "orderbook.50.ETHUSDT",
        "kline.15.ETHUSDT",
        "publicTrade.ETHUSDT",
        "allLiquidation.ETHUSDT",
        "tickers.ETHUSDT",
    ]


@pytest.mark.asyncio
async def test_start_subscribes_topics_and_backfills_history(fake_socket, fake_connector, wait_until) -> None:
    ws = fake_socket()
    engine, urls = _engine(_settings(backfill_on_start=True), fake_connector([ws]))
    backfilled: list[CandleView] = []
    engine.events.candle_backfilled.subscribe(backfilled.append)

    await engine.start()
    await wait_until(lambda: bool(ws.commands("subscribe")) and bool(backfilled))

    assert urls == ["wss://stream.bybit.com/v5/public/linear"]
    assert ws.commands("subscribe")[0]["args"] == engine.topics()
    assert [candle.start_time for candle in backfilled[0].candles] == [0, MINUTE_MS]
    assert engine.status()["state"] == ConnectionState.CONNECTED.value

    await engine.close()
    assert engine.status()["connected"] is False


@pytest.mark.asyncio
async def test_order_book_gap_triggers_resubscribe(fake_socket, fake_connector, wait_until) -> None:
    ws = fake_socket()
    engine, _ = _engine(_settings(), fake_connector([ws]))
    await engine.start()
    await wait_until(lambda: engine.connection.is_connected)

    ws.push(_snapshot(1))
    await wait_until(lambda: engine.order_books.has_book("BTCUSDT"))
    ws.push({**_snapshot(7), "type": "delta"})
    await wait_until(lambda: bool(ws.commands("unsubscribe")))
    await wait_until(lambda: len(ws.commands("subscribe")) == 2)

    assert ws.commands("unsubscribe")[0]["args"] == ["orderbook.50.BTCUSDT"]
    assert ws.commands("subscribe")[1]["args"] == ["orderbook.50.BTCUSDT"]
    assert engine.order_books.has_book("BTCUSDT") is False
    assert "orderbook.50.BTCUSDT" in engine.connection.subscriptions

    await engine.close()


@pytest.mark.asyncio
async def test_reconnect_discards_order_books(fake_socket, fake_connector, wait_until) -> None:
    first = fake_socket()
    second = fake_socket()
    connector = fake_connector([first, second])
    engine, _ = _engine(_settings(), connector)
    states: list[ConnectionState] = []
    engine.events.connection_state_changed.subscribe(states.append)
    await engine.start()
    await wait_until(lambda: engine.connection.is_connected)

    first.push(_snapshot(1))
    await wait_until(lambda: engine.order_books.has_book("BTCUSDT"))
    first.push(ConnectionClosedOK(None, None))
    await wait_until(lambda: len(connector.calls) == 2 and engine.connection.is_connected)

    assert engine.order_books.has_book("BTCUSDT") is False
    assert states.count(ConnectionState.CONNECTED) == 2
    assert ConnectionState.RECONNECTING in states
    assert second.commands("subscribe")[0]["args"] == engine.topics()

    await engine.close()


@pytest.mark.asyncio
async def test_change_symbol_swaps_subscriptions(fake_socket, fake_connector, wait_until) -> None:
    ws = fake_socket()
    engine, _ = _engine(_settings(), fake_connector([ws]))
    errors: list[str] = []
    engine.events.transient_error.subscribe(errors.append)
    await engine.start()
    await wait_until(lambda: engine.connection.is_connected)
    ws.push(_snapshot(1))
    await wait_until(lambda: engine.order_books.has_book("BTCUSDT"))

    assert await engine.change_symbol("btc") is False
    assert errors and "Invalid symbol" in errors[-1]
    assert engine.symbol == "BTCUSDT"

    assert await engine.change_symbol("ethusdt") is True
    assert engine.symbol == "ETHUSDT"
    assert engine.order_books.has_book("BTCUSDT") is False
    assert [command["args"][0] for command in ws.commands("unsubscribe")] == build_topics(
        "BTCUSDT", "1", orderbook_depth=50
    )
    assert [command["args"][0] for command in ws.commands("subscribe")[1:]] == engine.topics()
    assert engine.connection.subscriptions == engine.topics()

    await engine.close()


@pytest.mark.asyncio
async def test_change_interval_swaps_kline_topic(fake_socket, fake_connector, wait_until) -> None:
    ws = fake_socket()
    engine, _ = _engine(_settings(), fake_connector([ws]))
    errors: list[str] = []
    engine.events.transient_error.subscribe(errors.append)
    await engine.start()
    await wait_until(lambda: engine.connection.is_connected)

    assert await engine.change_interval("7") is False
    assert errors == ["Unsupported interval: 7"]

    assert await engine.change_interval("60") is True
    assert engine.interval == "60"
    assert ws.commands("unsubscribe")[0]["args"] == ["kline.1.BTCUSDT"]
    assert ws.commands("subscribe")[-1]["args"] == ["kline.60.BTCUSDT"]

    await engine.close()


@pytest.mark.asyncio
async def test_backfill_failure_is_reported_and_stale_results_dropped(fake_connector) -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, request=request, json={"retCode": 10001, "retMsg": "bad symbol"})

    engine, _ = _engine(_settings(), fake_connector([]), handler=failing)
    errors: list[str] = []
    engine.events.transient_error.subscribe(errors.append)

    assert await engine.backfill_candles("BTCUSDT", "1") == 0
    assert len(errors) == 1
    assert "backfill failed" in errors[0]

    await engine.close()

    stale_engine, _ = _engine(_settings(), fake_connector([]))
    assert await stale_engine.backfill_candles("ETHUSDT", "1") == 0
    assert stale_engine.candles.get_view("ETHUSDT", "1") is None
    assert await stale_engine.backfill_candles("BTCUSDT", "1") == 2
    await stale_engine.close()


@pytest.mark.asyncio
async def test_set_testnet_rebuilds_connection(fake_socket, fake_connector, wait_until) -> None:
    first = fake_socket()
    second = fake_socket()
    connector = fake_connector([first, second])
    hosts: list[str] = []
    engine, urls = _engine(_settings(), connector, rest_hosts=hosts)
    await engine.start()
    await wait_until(lambda: engine.connection.is_connected)
    original = engine.connection
    assert await engine.backfill_candles("BTCUSDT", "1") == 2

    await engine.set_testnet(True)
    await wait_until(lambda: engine.connection.is_connected)

    assert engine.testnet is True
    assert original.state is ConnectionState.DISCONNECTED
    assert urls == [
        "wss://stream.bybit.com/v5/public/linear",
        "wss://stream-testnet.bybit.com/v5/public/linear",
    ]
    assert second.commands("subscribe")[0]["args"] == engine.topics()

    assert engine.candles.get_view("BTCUSDT", "1") is None
    assert await engine.backfill_candles("BTCUSDT", "1") == 2
    assert hosts == ["api.bybit.com", "api-testnet.bybit.com"]

    await engine.close()
