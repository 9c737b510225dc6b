import asyncio
import dataclasses
from types import MappingProxyType
from typing import Any, Dict, List, Mapping

from strategy.position import NewPosition, Position, PositionStatus
from strategy.position_store import PositionStore, PositionStoreError

_UPDATABLE_FIELDS = frozenset(
    f.name for f in dataclasses.fields(Position)
    if f.name not in ('id', 'symbol', 'direction', 'entry_timestamp')
)


class PaperPositionStore(PositionStore):
    """In-memory position store used for paper trading and tests.

    Callers always receive copies, so mutating a returned ``Position`` never
    changes stored state.
    """

    def __init__(self) -> None:
        self._positions: Dict[str, Position] = {}
        self._lock = asyncio.Lock()

    @property
    def positions(self) -> Mapping[str, Position]:
        return MappingProxyType(self._positions)

    async def create_position(self, new: NewPosition) -> Position:
        position = Position.from_new(new)
        async with self._lock:
            self._positions[position.id] = position
        return dataclasses.replace(position)

    async def update_position(self, position_id: str, fields: Dict[str, Any]) -> Position:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise PositionStoreError(f"Cannot update fields {sorted(unknown)} on position {position_id}")
        async with self._lock:
            current = self._positions.get(position_id)
            if current is None:
                raise PositionStoreError(f"Unknown position {position_id}")
            if current.status.is_terminal:
                raise PositionStoreError(f"Position {position_id} is already {current.status.value}")
            updated = dataclasses.replace(current, **fields)
            self._positions[position_id] = updated
        return dataclasses.replace(updated)

    async def get_open_positions(self) -> List[Position]:
        async with self._lock:
            return [dataclasses.replace(p) for p in self._positions.values() if p.is_open]

    async def get_closed_positions(self) -> List[Position]:
        async with self._lock:
            return [dataclasses.replace(p) for p in self._positions.values() if p.status.is_terminal]

    def count(self, status: PositionStatus) -> int:
        return sum(1 for p in self._positions.values() if p.status is status)
