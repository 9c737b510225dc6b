from typing import Dict, List, Optional, Sequence, Tuple

from analytics.footprint import FootprintBar
from analytics.swings import SwingPoint, find_swing_points
from config import config, get_config_section

BEARISH_DELTA_DIVERGENCE = "Bearish Delta Divergence"
BULLISH_DELTA_DIVERGENCE = "Bullish Delta Divergence"

DEFAULT_SWING_LOOKAROUND = 2
DEFAULT_MIN_BARS = 10


class DeltaDivergenceDetector:
    def __init__(self, lookaround: Optional[int] = None, min_bars: Optional[int] = None, config_obj=None):
        cfg = {}
        if lookaround is None or min_bars is None:
            cfg = get_config_section(config_obj or config, 'metrics_engine')
        if lookaround is None:
            lookaround = cfg.get('swing_lookaround', DEFAULT_SWING_LOOKAROUND)
        if min_bars is None:
            min_bars = cfg.get('min_bars_for_divergence', DEFAULT_MIN_BARS)
        self.lookaround = int(lookaround)
        self.min_bars = int(min_bars)

    def check_bearish(self, swing1: SwingPoint, swing2: SwingPoint) -> Tuple[bool, Dict]:
        context = {
            "p1": swing1,
            "p2": swing2,
            "delta": swing2.cumulative_delta - swing1.cumulative_delta,
        }
        price_hh = swing2.price > swing1.price
        cd_not_higher = swing2.cumulative_delta <= swing1.cumulative_delta
        return swing2.timestamp > swing1.timestamp and price_hh and cd_not_higher, context

    def check_bullish(self, swing1: SwingPoint, swing2: SwingPoint) -> Tuple[bool, Dict]:
        context = {
            "p1": swing1,
            "p2": swing2,
            "delta": swing2.cumulative_delta - swing1.cumulative_delta,
        }
        price_ll = swing2.price < swing1.price
        cd_not_lower = swing2.cumulative_delta >= swing1.cumulative_delta
        return swing2.timestamp > swing1.timestamp and price_ll and cd_not_lower, context

    def detect(self, bars: Sequence[FootprintBar]) -> List[str]:
        """Compare the two most recent swing highs and lows against cumulative delta."""
        if len(bars) < self.min_bars:
            return []
        swing_highs, swing_lows = find_swing_points(bars, self.lookaround)

        signals: List[str] = []
        if len(swing_highs) >= 2:
            bearish, _ = self.check_bearish(swing_highs[-2], swing_highs[-1])
            if bearish:
                signals.append(BEARISH_DELTA_DIVERGENCE)
        if len(swing_lows) >= 2:
            bullish, _ = self.check_bullish(swing_lows[-2], swing_lows[-1])
            if bullish:
                signals.append(BULLISH_DELTA_DIVERGENCE)
        return signals


def calculate_divergences(bars: Sequence[FootprintBar], lookaround: int = DEFAULT_SWING_LOOKAROUND,
                          min_bars: int = DEFAULT_MIN_BARS) -> List[str]:
    return DeltaDivergenceDetector(lookaround=lookaround, min_bars=min_bars).detect(bars)
