import sys

sys.path.insert(0, '.')

from analytics.aggregator import BarAggregator
from analytics.footprint import SIDE_BUY, SIDE_SELL, Trade, bar_is_consistent
from orchestration.event_bus import BarEventBus, BarEventKind


def _trade(trade_id, time_ms, price, volume=1.0, side=SIDE_BUY):
    return Trade(id=trade_id, time=time_ms, price=price, volume=volume, side=side)


def _aggregator(history_size=100, bus=None):
    return BarAggregator(event_bus=bus, interval_ms=60_000, price_precision=2, history_size=history_size)


def test_bar_finalized_on_interval_boundary():
    aggregator = _aggregator()
    aggregator.ingest('BTCUSDT', _trade(1, 1_000, 100.0))
    aggregator.ingest('BTCUSDT', _trade(2, 59_999, 102.0, side=SIDE_SELL))
    assert aggregator.latest_bars('BTCUSDT') == []

    aggregator.ingest('BTCUSDT', _trade(3, 60_000, 103.0))
    completed = aggregator.latest_bars('BTCUSDT')
    assert len(completed) == 1
    assert completed[0].timestamp == 0
    assert completed[0].close == 102.0

    current = aggregator.current_bar('BTCUSDT')
    assert current.timestamp == 60_000
    assert current.open == current.high == current.low == current.close == 103.0


def test_history_is_bounded_and_oldest_first():
    aggregator = _aggregator(history_size=3)
    for i in range(6):
        aggregator.ingest('BTCUSDT', _trade(i, i * 60_000 + 5, 100.0 + i))

    bars = aggregator.latest_bars('BTCUSDT')
    assert [bar.timestamp for bar in bars] == [120_000, 180_000, 240_000]
    assert [bar.timestamp for bar in aggregator.latest_bars('BTCUSDT', 2)] == [180_000, 240_000]
    assert aggregator.latest_bars('BTCUSDT', 0) == []
    for bar in bars:
        assert bar.timestamp % 60_000 == 0
        assert bar_is_consistent(bar)


def test_late_trade_starts_its_own_interval():
    aggregator = _aggregator()
    aggregator.ingest('BTCUSDT', _trade(1, 61_000, 100.0))
    aggregator.ingest('BTCUSDT', _trade(2, 59_000, 99.0))

    history = aggregator.latest_bars('BTCUSDT')
    assert [bar.timestamp for bar in history] == [60_000]
    assert aggregator.current_bar('BTCUSDT').timestamp == 0


def test_symbols_are_isolated():
    aggregator = _aggregator()
    aggregator.ingest('btcusdt', _trade(1, 1_000, 100.0))
    aggregator.ingest('ETHUSDT', _trade(2, 1_000, 2000.0, volume=3.0))

    assert aggregator.symbols() == ['BTCUSDT', 'ETHUSDT']
    assert aggregator.current_bar('BTCUSDT').total_volume == 1.0
    assert aggregator.current_bar('ETHUSDT').total_volume == 3.0
    assert aggregator.current_bar('SOLUSDT') is None
    assert aggregator.latest_bars('SOLUSDT') == []


def test_window_returns_history_and_current_together():
    aggregator = _aggregator()
    for i in range(4):
        aggregator.ingest('BTCUSDT', _trade(i, i * 60_000, 100.0 + i))

    bars, current = aggregator.window('BTCUSDT', 2)
    assert [bar.timestamp for bar in bars] == [60_000, 120_000]
    assert current.timestamp == 180_000
    assert aggregator.window('XRPUSDT') == ([], None)


def test_flush_finalizes_open_bars_and_skips_empty():
    aggregator = _aggregator()
    assert aggregator.flush() == []

    aggregator.ingest('BTCUSDT', _trade(1, 1_000, 100.0))
    aggregator.ingest('ETHUSDT', _trade(2, 1_000, 2000.0))
    flushed = aggregator.flush()

    assert sorted(bar.symbol for bar in flushed) == ['BTCUSDT', 'ETHUSDT']
    assert aggregator.current_bar('BTCUSDT') is None
    assert len(aggregator.latest_bars('BTCUSDT')) == 1
    assert aggregator.flush() == []


def test_events_published_for_updates_and_completions():
    bus = BarEventBus(queue_size=16, max_overflows=10)
    subscription = bus.subscribe()
    aggregator = _aggregator(bus=bus)

    aggregator.ingest('BTCUSDT', _trade(1, 1_000, 100.0))
    aggregator.ingest('BTCUSDT', _trade(2, 61_000, 101.0))

    kinds = []
    while True:
        event = subscription.get_nowait()
        if event is None:
            break
        kinds.append((event.kind, event.bar.timestamp))

    assert kinds == [
        (BarEventKind.UPDATED, 0),
        (BarEventKind.COMPLETED, 0),
        (BarEventKind.UPDATED, 60_000),
    ]


def test_reset_drops_state():
    aggregator = _aggregator()
    aggregator.ingest('BTCUSDT', _trade(1, 1_000, 100.0))
    aggregator.reset()
    assert aggregator.symbols() == []
    assert aggregator.current_bar('BTCUSDT') is None
