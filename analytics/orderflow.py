from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from analytics.footprint import FootprintBar, PriceLevelData

PRICE_BUY = "Price Buy"
PRICE_SELL = "Price Sell"
DELTA_SELL = "Delta Sell"
DELTA_BUY = "Delta Buy"
NEUTRAL = "Neutral"
UNAVAILABLE = "N/A"

BULLISH_CHARACTERS = frozenset({PRICE_BUY, DELTA_BUY})
BEARISH_CHARACTERS = frozenset({PRICE_SELL, DELTA_SELL})

BEARISH_IMBALANCE_REVERSAL = "BEARISH_IMBALANCE_REVERSAL"
BULLISH_IMBALANCE_REVERSAL = "BULLISH_IMBALANCE_REVERSAL"

DEFAULT_IMBALANCE_RATIO = 3.0
DEFAULT_STACKED_IMBALANCE_COUNT = 2


def classify_bar(bar: Optional[Any]) -> str:
    """Bar character in strict precedence order.

    Accepts a ``FootprintBar`` or any object/mapping exposing ``open``,
    ``close`` and ``delta``; missing fields classify as ``N/A``.
    """
    if bar is None:
        return UNAVAILABLE
    if isinstance(bar, dict):
        open_, close, delta = bar.get('open'), bar.get('close'), bar.get('delta')
    else:
        open_ = getattr(bar, 'open', None)
        close = getattr(bar, 'close', None)
        delta = getattr(bar, 'delta', None)
    if open_ is None or close is None or delta is None:
        return UNAVAILABLE

    if close > open_ and delta >= 0:
        return PRICE_BUY
    if close < open_ and delta <= 0:
        return PRICE_SELL
    if delta < 0:
        return DELTA_SELL
    if delta > 0:
        return DELTA_BUY
    return NEUTRAL


def cumulative_deltas(bars: Sequence[FootprintBar]) -> np.ndarray:
    """Running cumulative delta across bars in the given order."""
    if not bars:
        return np.zeros(0, dtype=float)
    return np.cumsum([bar.delta or 0.0 for bar in bars], dtype=float)


def _has_buy_imbalance(level: PriceLevelData, below: PriceLevelData, ratio: float) -> bool:
    if level.buy_volume <= 0:
        return False
    if below.sell_volume == 0:
        return True
    return level.buy_volume >= below.sell_volume * ratio


def _has_sell_imbalance(level: PriceLevelData, above: PriceLevelData, ratio: float) -> bool:
    if level.sell_volume <= 0:
        return False
    if above.buy_volume == 0:
        return True
    return level.sell_volume >= above.buy_volume * ratio


def _stack_from_edge(levels: List[Tuple[float, PriceLevelData]], ratio: float, from_top: bool) -> int:
    """Consecutive imbalanced levels counted from the top (buy) or bottom (sell) edge."""
    stacked = 0
    if from_top:
        for i in range(len(levels) - 1):
            if not _has_buy_imbalance(levels[i][1], levels[i + 1][1], ratio):
                break
            stacked += 1
    else:
        for i in range(len(levels) - 1, 0, -1):
            if not _has_sell_imbalance(levels[i][1], levels[i - 1][1], ratio):
                break
            stacked += 1
    return stacked


def detect_imbalance_reversal(bars: Sequence[FootprintBar],
                              imbalance_ratio: float = DEFAULT_IMBALANCE_RATIO,
                              stacked_count: int = DEFAULT_STACKED_IMBALANCE_COUNT) -> Optional[str]:
    """Stacked imbalance at the extreme of the prior bar followed by a reversal bar.

    Buy imbalances stacked from the top traded level of the second-to-last
    bar, followed by a down-close last bar, give a bearish reversal. Sell
    imbalances stacked from the bottom level followed by an up-close bar give
    a bullish one.
    """
    if len(bars) < 2:
        return None
    prior, last = bars[-2], bars[-1]
    levels = prior.sorted_levels(descending=True)
    if len(levels) < 2:
        return None

    if _stack_from_edge(levels, imbalance_ratio, from_top=True) >= stacked_count:
        if last.close < last.open:
            return BEARISH_IMBALANCE_REVERSAL

    if _stack_from_edge(levels, imbalance_ratio, from_top=False) >= stacked_count:
        if last.close > last.open:
            return BULLISH_IMBALANCE_REVERSAL

    return None
