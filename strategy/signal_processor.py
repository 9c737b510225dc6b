import logging
from dataclasses import dataclass
from typing import Optional

from analytics.analytics_engine import OrderFlowMetrics
from analytics.orderflow import BEARISH_IMBALANCE_REVERSAL, BULLISH_IMBALANCE_REVERSAL
from strategy.divergence import BEARISH_DELTA_DIVERGENCE, BULLISH_DELTA_DIVERGENCE
from strategy.position import Direction
from strategy.settings import DEFAULT_ENTRY_TOLERANCE_PCT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntrySignal:
    direction: Direction
    reason: str


class EntrySignalEvaluator:
    """Evaluates the long and short entry rules against one metrics snapshot."""

    def __init__(self, tolerance_pct: float = DEFAULT_ENTRY_TOLERANCE_PCT):
        self.tolerance_pct = tolerance_pct

    def long_reason(self, metrics: OrderFlowMetrics, price: float) -> Optional[str]:
        bullish = metrics.is_bullish_character
        val = metrics.session_val
        if bullish and val is not None and val <= price <= val * (1 + self.tolerance_pct / 100):
            return f"Price near VAL ({val:.4f}) & Bullish Bar Character ('{metrics.bar_character}')"
        if bullish and BULLISH_DELTA_DIVERGENCE in metrics.divergence_signals:
            return f"{BULLISH_DELTA_DIVERGENCE} & Bullish Bar Character ('{metrics.bar_character}')"
        if metrics.imbalance_reversal == BULLISH_IMBALANCE_REVERSAL:
            return BULLISH_IMBALANCE_REVERSAL
        return None

    def short_reason(self, metrics: OrderFlowMetrics, price: float) -> Optional[str]:
        bearish = metrics.is_bearish_character
        vah = metrics.session_vah
        if bearish and vah is not None and vah * (1 - self.tolerance_pct / 100) <= price <= vah:
            return f"Price near VAH ({vah:.4f}) & Bearish Bar Character ('{metrics.bar_character}')"
        if bearish and BEARISH_DELTA_DIVERGENCE in metrics.divergence_signals:
            return f"{BEARISH_DELTA_DIVERGENCE} & Bearish Bar Character ('{metrics.bar_character}')"
        if metrics.imbalance_reversal == BEARISH_IMBALANCE_REVERSAL:
            return BEARISH_IMBALANCE_REVERSAL
        return None

    def reason_for(self, direction: Direction, metrics: OrderFlowMetrics, price: float) -> Optional[str]:
        if direction is Direction.LONG:
            return self.long_reason(metrics, price)
        return self.short_reason(metrics, price)

    def evaluate(self, metrics: OrderFlowMetrics, price: float) -> Optional[EntrySignal]:
        long_reason = self.long_reason(metrics, price)
        short_reason = self.short_reason(metrics, price)
        if long_reason and short_reason:
            logger.info("Conflicting entry signals at %.6f (long: %s, short: %s); standing aside",
                        price, long_reason, short_reason)
            return None
        if long_reason:
            return EntrySignal(Direction.LONG, long_reason)
        if short_reason:
            return EntrySignal(Direction.SHORT, short_reason)
        return None
