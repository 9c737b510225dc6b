import sys

sys.path.insert(0, '.')

import pytest

from analytics.analytics_engine import AnalyticsEngine, MetricsParams, calculate_order_flow_metrics
from analytics.aggregator import BarAggregator
from analytics.footprint import SIDE_BUY, SIDE_SELL, Trade
from analytics.orderflow import (
    BEARISH_IMBALANCE_REVERSAL,
    BULLISH_IMBALANCE_REVERSAL,
    DELTA_BUY,
    DELTA_SELL,
    NEUTRAL,
    PRICE_BUY,
    PRICE_SELL,
    UNAVAILABLE,
    classify_bar,
    detect_imbalance_reversal,
)
from analytics.profile import build_session_histogram, calculate_session_profile
from analytics.swings import find_swing_points
from analytics.vwap import SessionVWAP, calculate_session_vwap
from strategy.divergence import BEARISH_DELTA_DIVERGENCE, BULLISH_DELTA_DIVERGENCE, calculate_divergences
from tests.bar_fixtures import divergence_bars, make_bar


def _concentrated_bars():
    levels = {50.00: (6, 4), 50.01: (1, 1), 49.99: (2, 1), 50.02: (1, 0), 49.98: (0, 1)}
    return [make_bar(i, 50.0, 50.02, 49.98, 50.0, levels=levels) for i in range(5)]


def test_profile_poc_and_value_area():
    profile = calculate_session_profile(_concentrated_bars())
    assert profile.poc == 50.0
    assert profile.poc_volume == 50.0
    assert profile.vah == 50.0
    assert profile.val == 49.99
    assert profile.total_volume == 85.0


def test_value_area_covers_target_share():
    bars = [
        make_bar(0, 10, 14, 10, 12, levels={10: (3, 2), 11: (4, 4), 12: (9, 6), 13: (2, 5), 14: (1, 1)}),
        make_bar(1, 12, 14, 11, 13, levels={11: (2, 2), 12: (3, 3), 13: (6, 1), 14: (1, 0)}),
    ]
    profile = calculate_session_profile(bars)
    histogram = build_session_histogram(bars)
    covered = sum(volume for price, volume in histogram.items() if profile.val <= price <= profile.vah)
    assert profile.poc == 12.0
    assert covered >= 0.7 * profile.total_volume


def test_poc_tie_prefers_higher_price():
    bars = [make_bar(0, 10, 11, 10, 11, levels={10: (5, 0), 11: (0, 5)})]
    profile = calculate_session_profile(bars)
    assert profile.poc == 11.0


def test_value_area_tie_extends_downward():
    bars = [make_bar(0, 10, 12, 10, 11, levels={10: (2, 0), 11: (6, 0), 12: (2, 0)})]
    profile = calculate_session_profile(bars, value_area_pct=70)
    assert profile.vah == 11.0
    assert profile.val == 10.0


def test_profile_empty_input():
    profile = calculate_session_profile([])
    assert profile.is_empty
    assert profile.vah is None and profile.val is None


def test_session_vwap_uses_typical_price():
    bars = [
        make_bar(1, 10, 12, 9, 11, levels={11: (2, 0)}),
        make_bar(0, 20, 21, 18, 21, levels={21: (1, 1)}),
    ]
    expected = ((12 + 9 + 11) / 3 * 2 + (21 + 18 + 21) / 3 * 2) / 4
    assert calculate_session_vwap(bars) == pytest.approx(expected)
    assert calculate_session_vwap([]) is None

    running = SessionVWAP()
    assert running.get_vwap() is None
    running.add_bar(bars[1])
    assert running.get_vwap() == pytest.approx(20.0)


def test_classify_bar_precedence():
    assert classify_bar({'open': 10, 'close': 11, 'delta': 0}) == PRICE_BUY
    assert classify_bar({'open': 10, 'close': 9, 'delta': 0}) == PRICE_SELL
    assert classify_bar({'open': 10, 'close': 11, 'delta': -1}) == DELTA_SELL
    assert classify_bar({'open': 10, 'close': 9, 'delta': 2}) == DELTA_BUY
    assert classify_bar({'open': 10, 'close': 10, 'delta': 0}) == NEUTRAL
    assert classify_bar({'open': 10, 'close': None, 'delta': 1}) == UNAVAILABLE
    assert classify_bar(None) == UNAVAILABLE


def test_bearish_divergence_on_higher_high_with_lower_delta():
    assert calculate_divergences(divergence_bars()) == [BEARISH_DELTA_DIVERGENCE]


def test_divergence_requires_minimum_bars():
    assert calculate_divergences(divergence_bars()[:9]) == []
    assert calculate_divergences([]) == []


def test_bullish_divergence_on_lower_low_with_higher_delta():
    lows = [100, 99, 98, 95, 98, 99, 98, 97, 93, 96, 97, 98]
    deltas = [-10, -10, -10, -10, 5, 5, -5, -5, 5, 1, 1, 1]
    bars = [make_bar(i, low + 1, low + 2, low, low + 1, delta=d) for i, (low, d) in enumerate(zip(lows, deltas))]
    assert calculate_divergences(bars) == [BULLISH_DELTA_DIVERGENCE]


def test_swing_points_for_divergence_sequence():
    highs, lows = find_swing_points(divergence_bars(), lookaround=2)
    assert [(p.price, p.cumulative_delta) for p in highs] == [(105.0, 40.0), (107.0, 35.0)]
    assert [p.price for p in lows] == [99.0]


def _imbalance_bars(levels, last_open, last_close):
    prior = make_bar(0, 100, 101, 99, 100, levels=levels)
    last = make_bar(1, last_open, max(last_open, last_close), min(last_open, last_close), last_close, delta=0)
    return [prior, last]


def test_bearish_imbalance_reversal():
    levels = {101: (9, 0), 100: (6, 3), 99: (1, 2)}
    assert detect_imbalance_reversal(_imbalance_bars(levels, 100, 99)) == BEARISH_IMBALANCE_REVERSAL
    # up-close follow through is not a reversal
    assert detect_imbalance_reversal(_imbalance_bars(levels, 99, 100)) is None


def test_bullish_imbalance_reversal():
    levels = {101: (1, 0), 100: (1, 3), 99: (0, 6)}
    assert detect_imbalance_reversal(_imbalance_bars(levels, 99, 100)) == BULLISH_IMBALANCE_REVERSAL
    assert detect_imbalance_reversal(_imbalance_bars(levels, 100, 99)) is None


def test_imbalance_stack_must_start_at_the_extreme():
    levels = {102: (0, 1), 101: (9, 0), 100: (6, 3), 99: (1, 2)}
    assert detect_imbalance_reversal(_imbalance_bars(levels, 100, 99)) is None
    assert detect_imbalance_reversal(_imbalance_bars(levels, 100, 99)[:1]) is None


def test_order_flow_metrics_prefers_live_bar_character():
    completed = divergence_bars()
    live = make_bar(12, 100, 103, 100, 103, delta=4)
    metrics = calculate_order_flow_metrics(completed, live)
    assert metrics.bar_character == PRICE_BUY
    assert metrics.is_bullish_character
    assert metrics.divergence_signals == (BEARISH_DELTA_DIVERGENCE,)

    fallback = calculate_order_flow_metrics(completed, None)
    # last completed bar closes flat with negative delta
    assert fallback.bar_character == DELTA_SELL
    assert fallback.to_dict()['latestBarCharacter'] == DELTA_SELL


def test_analytics_engine_needs_minimum_bars():
    aggregator = BarAggregator(interval_ms=60_000, price_precision=2, history_size=100)
    engine = AnalyticsEngine(aggregator, MetricsParams(min_bars_for_metrics=3, analysis_window_bars=20))
    for i in range(3):
        aggregator.ingest('BTCUSDT', Trade(i, i * 60_000, 100.0 + i, 1.0, SIDE_BUY))
    assert engine.metrics_for('BTCUSDT') is None

    aggregator.ingest('BTCUSDT', Trade(10, 3 * 60_000, 104.0, 2.0, SIDE_SELL))
    snapshot = engine.metrics_for('BTCUSDT')
    assert snapshot is not None
    assert snapshot.session_poc is not None
    assert snapshot.bar_character == DELTA_SELL
