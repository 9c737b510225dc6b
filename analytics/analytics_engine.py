import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from analytics.footprint import FootprintBar
from analytics.orderflow import (
    BEARISH_CHARACTERS,
    BULLISH_CHARACTERS,
    DEFAULT_IMBALANCE_RATIO,
    DEFAULT_STACKED_IMBALANCE_COUNT,
    classify_bar,
    detect_imbalance_reversal,
)
from analytics.profile import DEFAULT_VALUE_AREA_PCT, calculate_session_profile
from analytics.vwap import calculate_session_vwap
from config import config as global_config, get_config_section
from strategy.divergence import DEFAULT_MIN_BARS, DEFAULT_SWING_LOOKAROUND, calculate_divergences

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsParams:
    value_area_pct: float = DEFAULT_VALUE_AREA_PCT
    imbalance_ratio: float = DEFAULT_IMBALANCE_RATIO
    stacked_imbalance_count: int = DEFAULT_STACKED_IMBALANCE_COUNT
    swing_lookaround: int = DEFAULT_SWING_LOOKAROUND
    min_bars_for_divergence: int = DEFAULT_MIN_BARS
    analysis_window_bars: int = 20
    min_bars_for_metrics: int = 5

    @classmethod
    def from_config(cls, config_obj=None, overrides: Optional[Dict[str, Any]] = None) -> 'MetricsParams':
        cfg = get_config_section(config_obj or global_config, 'metrics_engine')
        cfg.update({k: v for k, v in (overrides or {}).items() if v is not None})
        defaults = cls()
        return cls(
            value_area_pct=float(cfg.get('value_area_pct', defaults.value_area_pct)),
            imbalance_ratio=float(cfg.get('imbalance_ratio', defaults.imbalance_ratio)),
            stacked_imbalance_count=int(cfg.get('stacked_imbalance_count', defaults.stacked_imbalance_count)),
            swing_lookaround=int(cfg.get('swing_lookaround', defaults.swing_lookaround)),
            min_bars_for_divergence=int(cfg.get('min_bars_for_divergence', defaults.min_bars_for_divergence)),
            analysis_window_bars=int(cfg.get('analysis_window_bars', defaults.analysis_window_bars)),
            min_bars_for_metrics=int(cfg.get('min_bars_for_metrics', defaults.min_bars_for_metrics)),
        )


@dataclass(frozen=True)
class OrderFlowMetrics:
    session_poc: Optional[float] = None
    session_poc_volume: Optional[float] = None
    session_vah: Optional[float] = None
    session_val: Optional[float] = None
    session_vwap: Optional[float] = None
    bar_character: str = "N/A"
    divergence_signals: Tuple[str, ...] = field(default_factory=tuple)
    imbalance_reversal: Optional[str] = None

    @property
    def is_bullish_character(self) -> bool:
        return self.bar_character in BULLISH_CHARACTERS

    @property
    def is_bearish_character(self) -> bool:
        return self.bar_character in BEARISH_CHARACTERS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sessionPoc': self.session_poc,
            'sessionPocVolume': self.session_poc_volume,
            'sessionVah': self.session_vah,
            'sessionVal': self.session_val,
            'sessionVwap': self.session_vwap,
            'latestBarCharacter': self.bar_character,
            'divergenceSignals': list(self.divergence_signals),
            'imbalanceReversalSignal': self.imbalance_reversal,
        }


def calculate_order_flow_metrics(completed: Sequence[FootprintBar], current: Optional[FootprintBar] = None,
                                 params: Optional[MetricsParams] = None) -> OrderFlowMetrics:
    """Combine profile, VWAP, bar character, divergence and imbalance signals.

    Bar character is read from the live partial bar when it has volume and
    from the last completed bar otherwise.
    """
    params = params or MetricsParams()
    bars = sorted(completed, key=lambda b: b.timestamp)

    profile = calculate_session_profile(bars, params.value_area_pct)
    vwap = calculate_session_vwap(bars)

    character_bar = current
    if character_bar is None or not character_bar.total_volume:
        character_bar = bars[-1] if bars else None

    divergences = calculate_divergences(
        bars,
        lookaround=params.swing_lookaround,
        min_bars=params.min_bars_for_divergence,
    )
    reversal = detect_imbalance_reversal(
        bars,
        imbalance_ratio=params.imbalance_ratio,
        stacked_count=params.stacked_imbalance_count,
    )

    return OrderFlowMetrics(
        session_poc=profile.poc,
        session_poc_volume=profile.poc_volume,
        session_vah=profile.vah,
        session_val=profile.val,
        session_vwap=vwap,
        bar_character=classify_bar(character_bar),
        divergence_signals=tuple(divergences),
        imbalance_reversal=reversal,
    )


class AnalyticsEngine:
    """Reads a consistent window from the aggregator and computes metrics for it."""

    def __init__(self, aggregator, params: Optional[MetricsParams] = None, config_obj=None):
        self.aggregator = aggregator
        self.params = params or MetricsParams.from_config(config_obj)

    def metrics_for(self, symbol: str) -> Optional[OrderFlowMetrics]:
        bars, current = self.aggregator.window(symbol, self.params.analysis_window_bars)
        if len(bars) < self.params.min_bars_for_metrics:
            logger.debug(
                "Not enough completed bars for %s metrics (%s < %s)",
                symbol, len(bars), self.params.min_bars_for_metrics,
            )
            return None
        return calculate_order_flow_metrics(bars, current, self.params)

    def snapshot(self, symbols: List[str]) -> Dict[str, Optional[OrderFlowMetrics]]:
        return {symbol: self.metrics_for(symbol) for symbol in symbols}
