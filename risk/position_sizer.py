from typing import Optional, Tuple
import logging

from strategy.position import Direction
from strategy.settings import StrategySettings


logger = logging.getLogger(__name__)


def calculate_pnl(direction: Direction, entry_price: float, exit_price: float,
                  quantity: float) -> Tuple[float, float]:
    """Directional PnL and PnL percentage of the entry notional."""
    if direction is Direction.LONG:
        pnl = (exit_price - entry_price) * quantity
    else:
        pnl = (entry_price - exit_price) * quantity
    notional = entry_price * quantity
    pnl_pct = (pnl / notional) * 100 if notional else 0.0
    return pnl, pnl_pct


class RiskManager:
    def __init__(self, settings: StrategySettings):
        self.buy_amount_usd = settings.buy_amount_usd
        self.stop_loss_pct = settings.initial_stop_loss_pct
        self.trail_activation_pct = settings.trail_activation_profit_pct
        self.trail_delta_pct = settings.trail_delta_pct
        self.max_active_positions = settings.max_active_positions

    def calculate_quantity(self, price: float) -> float:
        if price <= 0:
            raise ValueError(f"Cannot size a position at price {price}")
        return self.buy_amount_usd / price

    def calculate_stop_price(self, entry_price: float, direction: Direction) -> float:
        if direction is Direction.LONG:
            return entry_price * (1 - self.stop_loss_pct / 100)
        return entry_price * (1 + self.stop_loss_pct / 100)

    @staticmethod
    def stop_hit(direction: Direction, stop_price: float, current_price: float) -> bool:
        if direction is Direction.LONG:
            return current_price <= stop_price
        return current_price >= stop_price

    @staticmethod
    def profit_pct(direction: Direction, entry_price: float, current_price: float) -> float:
        if entry_price <= 0:
            return 0.0
        if direction is Direction.LONG:
            return (current_price - entry_price) / entry_price * 100
        return (entry_price - current_price) / entry_price * 100

    def should_arm_trailing(self, direction: Direction, entry_price: float, current_price: float) -> bool:
        return self.profit_pct(direction, entry_price, current_price) >= self.trail_activation_pct

    @staticmethod
    def better_extreme(direction: Direction, extreme: float, current_price: float) -> float:
        if direction is Direction.LONG:
            return max(extreme, current_price)
        return min(extreme, current_price)

    def calculate_trail_stop(self, direction: Direction, extreme: float) -> float:
        if direction is Direction.LONG:
            return extreme * (1 - self.trail_delta_pct / 100)
        return extreme * (1 + self.trail_delta_pct / 100)

    def can_open(self, open_count: int) -> bool:
        return open_count < self.max_active_positions

    def size_entry(self, direction: Direction, price: float) -> Tuple[float, float]:
        quantity = self.calculate_quantity(price)
        stop = self.calculate_stop_price(price, direction)
        logger.debug("Sized %s entry at %.6f: qty=%.8f stop=%.6f", direction.value, price, quantity, stop)
        return quantity, stop


def unrealized_pnl(direction: Direction, entry_price: float, current_price: float,
                   quantity: float) -> Optional[float]:
    if current_price is None:
        return None
    return calculate_pnl(direction, entry_price, current_price, quantity)[0]
