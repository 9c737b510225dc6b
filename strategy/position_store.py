from abc import ABC, abstractmethod
from typing import Any, Dict, List

from strategy.position import NewPosition, Position


class PositionStoreError(Exception):
    pass


class PositionStore(ABC):
    """Persistence boundary for positions owned by the decision engine.

    ``update_position`` must apply the given fields and return the stored
    result; any failure is raised as ``PositionStoreError``.
    """

    @abstractmethod
    async def create_position(self, new: NewPosition) -> Position:
        pass

    @abstractmethod
    async def update_position(self, position_id: str, fields: Dict[str, Any]) -> Position:
        pass

    @abstractmethod
    async def get_open_positions(self) -> List[Position]:
        pass

    @abstractmethod
    async def get_closed_positions(self) -> List[Position]:
        pass

    async def close(self) -> None:
        return None
