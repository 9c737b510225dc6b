from __future__ import annotations
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from risk.position_sizer import RiskManager, calculate_pnl
from strategy.position import (
    EXIT_PROACTIVE,
    EXIT_STOP_LOSS,
    EXIT_TRAILING_STOP,
    Position,
    PositionStatus,
)

if TYPE_CHECKING:
    from analytics.analytics_engine import OrderFlowMetrics
    from strategy.signal_processor import EntrySignalEvaluator

ACTION_CLOSE = 'close'
ACTION_ARM_TRAILING = 'arm_trailing'
ACTION_UPDATE_EXTREME = 'update_extreme'


@dataclass
class PositionAction:
    kind: str
    to_state: PositionStatus
    updates: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.to_state.is_terminal


class PositionStateProcessor(ABC):
    def __init__(self, position: Position, risk: RiskManager, evaluator: EntrySignalEvaluator):
        self.position = position
        self.risk = risk
        self.evaluator = evaluator

    @abstractmethod
    def process(self, current_price: float, metrics: Optional[OrderFlowMetrics]) -> Optional[PositionAction]:
        pass

    def _close(self, exit_price: float, reason: str) -> PositionAction:
        pos = self.position
        pnl, pnl_pct = calculate_pnl(pos.direction, pos.entry_price, exit_price, pos.quantity)
        return PositionAction(
            kind=ACTION_CLOSE,
            to_state=PositionStatus.CLOSED_EXITED,
            updates={
                'status': PositionStatus.CLOSED_EXITED,
                'exit_price': exit_price,
                'pnl': pnl,
                'pnl_percentage': pnl_pct,
                'exit_reason': reason,
                'exit_timestamp': int(time.time() * 1000),
            },
            reason=reason,
        )

    def _check_exits(self, current_price: float, metrics: Optional[OrderFlowMetrics]) -> Optional[PositionAction]:
        """Hard stop first, then a proactive exit on the opposite entry signal."""
        pos = self.position
        if self.risk.stop_hit(pos.direction, pos.initial_stop_loss_price, current_price):
            # Filled at the stop level, not at the tick that crossed it
            return self._close(pos.initial_stop_loss_price, EXIT_STOP_LOSS)
        if metrics is not None:
            opposite = self.evaluator.reason_for(pos.direction.opposite, metrics, current_price)
            if opposite:
                return self._close(current_price, f"{EXIT_PROACTIVE}: {opposite}")
        return None


class EntryActiveState(PositionStateProcessor):
    def process(self, current_price: float, metrics: Optional[OrderFlowMetrics]) -> Optional[PositionAction]:
        action = self._check_exits(current_price, metrics)
        if action is not None:
            return action
        pos = self.position
        if self.risk.should_arm_trailing(pos.direction, pos.entry_price, current_price):
            return PositionAction(
                kind=ACTION_ARM_TRAILING,
                to_state=PositionStatus.TRAILING_ACTIVE,
                updates={
                    'status': PositionStatus.TRAILING_ACTIVE,
                    'trailing_extreme_price': current_price,
                },
            )
        return None


class TrailingActiveState(PositionStateProcessor):
    def process(self, current_price: float, metrics: Optional[OrderFlowMetrics]) -> Optional[PositionAction]:
        action = self._check_exits(current_price, metrics)
        if action is not None:
            return action

        pos = self.position
        if pos.trailing_extreme_price is None:
            # Lost extreme; restart tracking from the current price this cycle
            return PositionAction(
                kind=ACTION_UPDATE_EXTREME,
                to_state=PositionStatus.TRAILING_ACTIVE,
                updates={'trailing_extreme_price': current_price},
                reason='extreme_reset',
            )

        extreme = self.risk.better_extreme(pos.direction, pos.trailing_extreme_price, current_price)
        trail_stop = self.risk.calculate_trail_stop(pos.direction, extreme)
        if self.risk.stop_hit(pos.direction, trail_stop, current_price):
            action = self._close(current_price, EXIT_TRAILING_STOP)
            if extreme != pos.trailing_extreme_price:
                action.updates['trailing_extreme_price'] = extreme
            return action
        if extreme != pos.trailing_extreme_price:
            return PositionAction(
                kind=ACTION_UPDATE_EXTREME,
                to_state=PositionStatus.TRAILING_ACTIVE,
                updates={'trailing_extreme_price': extreme},
            )
        return None


STATE_PROCESSORS = {
    PositionStatus.ENTRY_ACTIVE: EntryActiveState,
    PositionStatus.TRAILING_ACTIVE: TrailingActiveState,
}


def processor_for(position: Position, risk: RiskManager,
                  evaluator: EntrySignalEvaluator) -> Optional[PositionStateProcessor]:
    processor_cls = STATE_PROCESSORS.get(position.status)
    if processor_cls is None:
        return None
    return processor_cls(position, risk, evaluator)
