from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import time
import uuid


class Direction(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> 'Direction':
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


class PositionStatus(Enum):
    ENTRY_ACTIVE = "ENTRY_ACTIVE"
    TRAILING_ACTIVE = "TRAILING_ACTIVE"
    CLOSED_EXITED = "CLOSED_EXITED"
    CLOSED_ERROR = "CLOSED_ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (PositionStatus.CLOSED_EXITED, PositionStatus.CLOSED_ERROR)


EXIT_STOP_LOSS = 'stop_loss'
EXIT_TRAILING_STOP = 'trailing_stop'
EXIT_PROACTIVE = 'proactive_exit'


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class NewPosition:
    symbol: str
    direction: Direction
    entry_price: float
    quantity: float
    initial_stop_loss_price: float
    entry_reason: Optional[str] = None


@dataclass
class Position:
    symbol: str
    direction: Direction
    entry_price: float
    quantity: float
    initial_stop_loss_price: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: PositionStatus = PositionStatus.ENTRY_ACTIVE
    trailing_extreme_price: Optional[float] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_percentage: Optional[float] = None
    entry_reason: Optional[str] = None
    exit_reason: Optional[str] = None
    entry_timestamp: int = field(default_factory=_now_ms)
    exit_timestamp: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_new(cls, new: NewPosition) -> 'Position':
        return cls(
            symbol=new.symbol,
            direction=new.direction,
            entry_price=new.entry_price,
            quantity=new.quantity,
            initial_stop_loss_price=new.initial_stop_loss_price,
            entry_reason=new.entry_reason,
        )

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['direction'] = self.direction.value
        data['status'] = self.status.value
        return data


@dataclass
class Transition:
    position_id: str
    symbol: str
    from_state: str
    to_state: str
    action: str
    reason: Optional[str] = None
    position: Optional[Position] = None
