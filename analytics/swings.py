from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from analytics.footprint import FootprintBar
from analytics.orderflow import cumulative_deltas

SWING_HIGH = 'high'
SWING_LOW = 'low'


@dataclass(frozen=True)
class SwingPoint:
    kind: str
    price: float
    cumulative_delta: float
    timestamp: int
    index: int


def find_swing_points(bars: Sequence[FootprintBar], lookaround: int = 2) -> Tuple[List[SwingPoint], List[SwingPoint]]:
    """Swing highs and lows confirmed by ``lookaround`` bars on each side.

    A bar is a swing high when its high is >= every high in the symmetric
    window, and a swing low when its low is <= every low in it. Bars are
    sorted chronologically first.
    """
    if lookaround < 1:
        raise ValueError("lookaround must be >= 1")
    ordered = sorted(bars, key=lambda b: b.timestamp)
    if len(ordered) < 2 * lookaround + 1:
        return [], []

    highs = np.array([b.high for b in ordered], dtype=float)
    lows = np.array([b.low for b in ordered], dtype=float)
    cds = cumulative_deltas(ordered)

    swing_highs: List[SwingPoint] = []
    swing_lows: List[SwingPoint] = []
    for i in range(lookaround, len(ordered) - lookaround):
        window = slice(i - lookaround, i + lookaround + 1)
        if highs[i] >= highs[window].max():
            swing_highs.append(SwingPoint(SWING_HIGH, float(highs[i]), float(cds[i]), ordered[i].timestamp, i))
        if lows[i] <= lows[window].min():
            swing_lows.append(SwingPoint(SWING_LOW, float(lows[i]), float(cds[i]), ordered[i].timestamp, i))
    return swing_highs, swing_lows
