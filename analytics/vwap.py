import logging
from typing import Dict, Iterable, Optional

from analytics.footprint import FootprintBar


logger = logging.getLogger(__name__)


class SessionVWAP:
    """Running typical-price VWAP over bars fed in chronological order."""

    def __init__(self):
        self.sum_pv = 0.0
        self.sum_v = 0.0
        self.bar_count = 0
        self.last_timestamp: Optional[int] = None

    def add_bar(self, bar: FootprintBar) -> Optional[float]:
        if bar.total_volume <= 0:
            return self.get_vwap()
        if self.last_timestamp is not None and bar.timestamp < self.last_timestamp:
            logger.debug("VWAP bar %s for %s arrived before %s", bar.timestamp, bar.symbol, self.last_timestamp)
        typical_price = (bar.high + bar.low + bar.close) / 3.0
        self.sum_pv += typical_price * bar.total_volume
        self.sum_v += bar.total_volume
        self.bar_count += 1
        self.last_timestamp = bar.timestamp
        return self.get_vwap()

    def get_vwap(self) -> Optional[float]:
        if self.sum_v <= 0:
            return None
        return self.sum_pv / self.sum_v

    def to_dict(self) -> Dict:
        return {
            'vwap': self.get_vwap(),
            'volume': self.sum_v,
            'bars': self.bar_count,
        }


def calculate_session_vwap(bars: Iterable[FootprintBar]) -> Optional[float]:
    vwap = SessionVWAP()
    for bar in sorted(bars, key=lambda b: b.timestamp):
        vwap.add_bar(bar)
    return vwap.get_vwap()
