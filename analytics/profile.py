import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import numpy as np

from analytics.footprint import FootprintBar


logger = logging.getLogger(__name__)

DEFAULT_VALUE_AREA_PCT = 70.0


@dataclass(frozen=True)
class SessionProfile:
    poc: Optional[float] = None
    poc_volume: Optional[float] = None
    vah: Optional[float] = None
    val: Optional[float] = None
    total_volume: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.poc is None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            'poc': self.poc,
            'pocVolume': self.poc_volume,
            'vah': self.vah,
            'val': self.val,
            'totalVolume': self.total_volume,
        }


def build_session_histogram(bars: Iterable[FootprintBar]) -> Dict[float, float]:
    """Aggregate ``price -> volume`` across every level of every bar."""
    histogram: Dict[float, float] = {}
    for bar in bars:
        for key, level in bar.price_levels.items():
            try:
                price = float(key)
            except ValueError:
                continue
            if price != price:
                continue
            histogram[price] = histogram.get(price, 0.0) + level.total_volume
    return histogram


def calculate_session_profile(bars: Iterable[FootprintBar],
                              value_area_pct: float = DEFAULT_VALUE_AREA_PCT) -> SessionProfile:
    """Point of control and value area of the aggregated session histogram.

    Levels are scanned from the highest price down, so when several levels
    share the maximum volume the higher price becomes the POC. The value area
    starts at the POC and repeatedly claims whichever neighbouring level has
    more volume; on a tie it extends downward. It stops once the claimed
    volume reaches ``value_area_pct`` of the session total or both sides are
    exhausted.
    """
    histogram = build_session_histogram(bars)
    total_volume = float(sum(histogram.values()))
    if not histogram or total_volume <= 0:
        return SessionProfile(total_volume=total_volume)

    prices = np.array(sorted(histogram, reverse=True), dtype=float)
    volumes = np.array([histogram[p] for p in prices], dtype=float)

    # argmax returns the first maximum, i.e. the highest price on ties
    poc_idx = int(np.argmax(volumes))
    poc_price = float(prices[poc_idx])
    poc_volume = float(volumes[poc_idx])

    target = total_volume * (value_area_pct / 100.0)
    accumulated = poc_volume
    top = poc_idx - 1
    bottom = poc_idx + 1
    vah_idx = poc_idx
    val_idx = poc_idx

    while accumulated < target:
        vol_above = volumes[top] if top >= 0 else None
        vol_below = volumes[bottom] if bottom < len(volumes) else None
        if vol_above is None and vol_below is None:
            break
        if vol_below is None or (vol_above is not None and vol_above > vol_below):
            accumulated += vol_above
            vah_idx = top
            top -= 1
        else:
            accumulated += vol_below
            val_idx = bottom
            bottom += 1

    return SessionProfile(
        poc=poc_price,
        poc_volume=poc_volume,
        vah=float(prices[vah_idx]),
        val=float(prices[val_idx]),
        total_volume=total_volume,
    )
