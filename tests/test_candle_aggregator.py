from __future__ import annotations

from bybit_market_sync.state.candles import Candle, CandleAggregator, CandleKey, CandleUpdate

MINUTE_MS = 60_000


def _candle(start: int, close: float, *, confirmed: bool, open_: float = 10.0, volume: float = 1.0) -> Candle:
    return Candle(
        start_time=start,
        end_time=start + MINUTE_MS - 1,
        interval="1",
        open=open_,
        high=max(open_, close),
        low=min(open_, close),
        close=close,
        volume=volume,
        turnover=volume * close,
        confirmed=confirmed,
        timestamp_ms=start + 1,
    )


def test_live_updates_then_confirmation_produce_one_closed_candle() -> None:
    aggregator = CandleAggregator(capacity=10)
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 12.0, confirmed=False))
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 13.0, confirmed=False))
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 15.0, confirmed=True))

    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert len(view.candles) == 1
    assert view.candles[0].close == 15.0
    assert view.candles[0].confirmed is True
    assert view.live is None
    assert view.closed_count == 1


def test_live_candle_is_appended_after_closed_history() -> None:
    aggregator = CandleAggregator()
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 11.0, confirmed=True))
    update = aggregator.apply_candle("BTCUSDT", "1", _candle(MINUTE_MS, 12.0, confirmed=False))

    assert update is not None
    assert update.confirmed is False
    assert [candle.start_time for candle in update.view.candles] == [0, MINUTE_MS]
    assert update.view.candles[-1].status == "updating"
    assert update.view.live is not None


def test_capacity_keeps_most_recent_closed_candles() -> None:
    aggregator = CandleAggregator(capacity=3, view_limit=10)
    for index in range(5):
        aggregator.apply_candle("BTCUSDT", "1", _candle(index * MINUTE_MS, 10.0 + index, confirmed=True))

    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert [candle.start_time for candle in view.candles] == [2 * MINUTE_MS, 3 * MINUTE_MS, 4 * MINUTE_MS]
    assert view.closed_count == 3


def test_confirmed_candles_stay_sorted_and_unique() -> None:
    aggregator = CandleAggregator()
    aggregator.apply_candle("BTCUSDT", "1", _candle(2 * MINUTE_MS, 12.0, confirmed=True))
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 10.0, confirmed=True))
    aggregator.apply_candle("BTCUSDT", "1", _candle(2 * MINUTE_MS, 14.0, confirmed=True))

    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert [candle.start_time for candle in view.candles] == [0, 2 * MINUTE_MS]
    assert view.candles[-1].close == 14.0


def test_late_update_overwrites_closed_entry_and_stays_confirmed() -> None:
    aggregator = CandleAggregator()
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 15.0, confirmed=True))
    update = aggregator.apply_candle("BTCUSDT", "1", _candle(0, 16.0, confirmed=False))

    assert update is not None
    view = update.view
    assert len(view.candles) == 1
    assert view.candles[0].close == 16.0
    assert view.candles[0].confirmed is True
    assert view.live is None


def test_stale_live_update_is_dropped() -> None:
    aggregator = CandleAggregator()
    published: list[CandleUpdate] = []
    aggregator.updates.subscribe(published.append)
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 10.0, confirmed=True))
    aggregator.apply_candle("BTCUSDT", "1", _candle(2 * MINUTE_MS, 12.0, confirmed=True))

    assert aggregator.apply_candle("BTCUSDT", "1", _candle(MINUTE_MS, 11.0, confirmed=False)) is None
    assert len(published) == 2


def test_missed_confirmation_drops_older_live_candle() -> None:
    aggregator = CandleAggregator()
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 10.0, confirmed=False))
    aggregator.apply_candle("BTCUSDT", "1", _candle(MINUTE_MS, 11.0, confirmed=True))

    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert view.live is None
    assert [candle.start_time for candle in view.candles] == [MINUTE_MS]


def test_series_are_isolated_by_symbol_and_interval() -> None:
    aggregator = CandleAggregator()
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 10.0, confirmed=True))
    aggregator.apply_candle("BTCUSDT", "5", _candle(0, 20.0, confirmed=True))
    aggregator.apply_candle("ETHUSDT", "1", _candle(0, 30.0, confirmed=True))

    assert aggregator.keys() == [CandleKey("BTCUSDT", "1"), CandleKey("BTCUSDT", "5"), CandleKey("ETHUSDT", "1")]

    aggregator.clear("BTCUSDT", "1")
    assert aggregator.get_view("BTCUSDT", "1") is None
    assert aggregator.get_view("BTCUSDT", "5") is not None

    aggregator.clear("BTCUSDT")
    assert aggregator.keys() == [CandleKey("ETHUSDT", "1")]


def test_backfill_seeds_only_an_empty_history() -> None:
    aggregator = CandleAggregator(capacity=10)
    history = [_candle(index * MINUTE_MS, 10.0 + index, confirmed=True) for index in (2, 0, 1)]

    assert aggregator.backfill("BTCUSDT", "1", history) == 3
    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert [candle.start_time for candle in view.candles] == [0, MINUTE_MS, 2 * MINUTE_MS]

    assert aggregator.backfill("BTCUSDT", "1", [_candle(3 * MINUTE_MS, 1.0, confirmed=True)]) == 0
    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert view.closed_count == 3


def test_backfill_skips_rows_overlapping_the_live_candle() -> None:
    aggregator = CandleAggregator()
    aggregator.apply_candle("BTCUSDT", "1", _candle(2 * MINUTE_MS, 99.0, confirmed=False))
    history = [
        _candle(0, 10.0, confirmed=True),
        _candle(MINUTE_MS, 11.0, confirmed=True),
        _candle(2 * MINUTE_MS, 12.0, confirmed=True),
        _candle(3 * MINUTE_MS, 13.0, confirmed=False),
    ]

    assert aggregator.backfill("BTCUSDT", "1", history) == 2
    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert [candle.start_time for candle in view.candles] == [0, MINUTE_MS, 2 * MINUTE_MS]
    assert view.live is not None
    assert view.live.close == 99.0


def test_view_limit_and_latest_candle() -> None:
    aggregator = CandleAggregator(view_limit=2)
    for index in range(4):
        aggregator.apply_candle("BTCUSDT", "1", _candle(index * MINUTE_MS, 10.0, confirmed=True))
    aggregator.apply_candle("BTCUSDT", "1", _candle(4 * MINUTE_MS, 10.5, confirmed=False))

    view = aggregator.get_view("BTCUSDT", "1")
    assert view is not None
    assert [candle.start_time for candle in view.candles] == [2 * MINUTE_MS, 3 * MINUTE_MS, 4 * MINUTE_MS]
    assert view.last_update == 4 * MINUTE_MS + 1

    wide = aggregator.get_view("BTCUSDT", "1", limit=10)
    assert wide is not None
    assert len(wide.candles) == 5

    latest = aggregator.latest_candle("BTCUSDT", "1")
    assert latest is not None
    assert latest.confirmed is False


def test_ohlc_stats_over_closed_candles() -> None:
    aggregator = CandleAggregator()
    aggregator.apply_candle("BTCUSDT", "1", _candle(0, 12.0, confirmed=True, open_=10.0, volume=2.0))
    aggregator.apply_candle("BTCUSDT", "1", _candle(MINUTE_MS, 9.0, confirmed=True, open_=12.0, volume=3.0))

    stats = aggregator.ohlc_stats("BTCUSDT", "1")
    assert stats is not None
    assert stats.price == 9.0
    assert stats.change == -1.0
    assert stats.change_percent == -10.0
    assert stats.high == 12.0
    assert stats.low == 9.0
    assert stats.volume == 5.0
    assert stats.direction == "bear"
    assert aggregator.ohlc_stats("ETHUSDT", "1") is None


def test_candle_derived_fields() -> None:
    candle = _candle(0, 11.0, confirmed=True, open_=10.0)
    assert candle.change == 1.0
    assert candle.change_percent == 10.0
    assert candle.direction == "bull"
    assert candle.status == "closed"
    payload = candle.as_dict()
    assert payload["start_time"] == 0
    assert payload["direction"] == "bull"
    assert _candle(0, 5.0, confirmed=False, open_=0.0).change_percent == 0.0
