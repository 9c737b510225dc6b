from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

SIDE_BUY = 'buy'
SIDE_SELL = 'sell'

DEFAULT_PRICE_PRECISION = 2


def align_timestamp(time_ms: int, interval_ms: int) -> int:
    """Start of the bar interval containing ``time_ms``."""
    return (int(time_ms) // interval_ms) * interval_ms


def format_price_key(price: float, precision: int = DEFAULT_PRICE_PRECISION) -> str:
    return f"{price:.{precision}f}"


@dataclass(frozen=True)
class Trade:
    id: int
    time: int
    price: float
    volume: float
    side: str

    @classmethod
    def from_maker_flag(cls, trade_id: int, time_ms: int, price: float, volume: float,
                        is_buyer_maker: bool) -> 'Trade':
        # Buyer is maker => the taker hit the bid
        side = SIDE_SELL if is_buyer_maker else SIDE_BUY
        return cls(id=trade_id, time=int(time_ms), price=price, volume=volume, side=side)

    @property
    def is_buy(self) -> bool:
        return self.side == SIDE_BUY


@dataclass(frozen=True)
class PriceLevelData:
    buy_volume: float = 0.0
    sell_volume: float = 0.0

    @property
    def total_volume(self) -> float:
        return self.buy_volume + self.sell_volume

    def add(self, volume: float, is_buy: bool) -> 'PriceLevelData':
        if is_buy:
            return PriceLevelData(self.buy_volume + volume, self.sell_volume)
        return PriceLevelData(self.buy_volume, self.sell_volume + volume)

    def to_dict(self) -> Dict[str, float]:
        return {'buyVolume': self.buy_volume, 'sellVolume': self.sell_volume}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'PriceLevelData':
        return cls(
            buy_volume=float(data.get('buyVolume') or 0.0),
            sell_volume=float(data.get('sellVolume') or 0.0),
        )


@dataclass(frozen=True)
class FootprintBar:
    """Immutable view of one footprint bar, either finalized or a live snapshot."""

    symbol: str
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    total_volume: float = 0.0
    delta: float = 0.0
    bid_volume: float = 0.0
    ask_volume: float = 0.0
    price_levels: Mapping[str, PriceLevelData] = field(default_factory=lambda: MappingProxyType({}))
    trade_count: int = 0

    def sorted_levels(self, descending: bool = True) -> List[Tuple[float, PriceLevelData]]:
        levels = []
        for key, data in self.price_levels.items():
            try:
                levels.append((float(key), data))
            except ValueError:
                continue
        levels.sort(key=lambda item: item[0], reverse=descending)
        return levels

    def level(self, price: float, precision: int = DEFAULT_PRICE_PRECISION) -> PriceLevelData:
        return self.price_levels.get(format_price_key(price, precision), PriceLevelData())

    def price_levels_to_dict(self) -> Dict[str, Dict[str, float]]:
        return {key: data.to_dict() for key, data in self.price_levels.items()}

    @staticmethod
    def price_levels_from_dict(data: Mapping[str, Mapping[str, Any]]) -> Mapping[str, PriceLevelData]:
        return MappingProxyType({str(key): PriceLevelData.from_dict(value) for key, value in data.items()})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'totalVolume': self.total_volume,
            'delta': self.delta,
            'bidVolume': self.bid_volume,
            'askVolume': self.ask_volume,
            'priceLevels': self.price_levels_to_dict(),
            'tradeCount': self.trade_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'FootprintBar':
        return cls(
            symbol=data['symbol'],
            timestamp=int(data['timestamp']),
            open=data.get('open'),
            high=data.get('high'),
            low=data.get('low'),
            close=data.get('close'),
            total_volume=float(data.get('totalVolume') or 0.0),
            delta=data.get('delta'),
            bid_volume=float(data.get('bidVolume') or 0.0),
            ask_volume=float(data.get('askVolume') or 0.0),
            price_levels=cls.price_levels_from_dict(data.get('priceLevels') or {}),
            trade_count=int(data.get('tradeCount') or 0),
        )


class FootprintBarBuilder:
    """Mutable accumulator for the bar currently being built.

    OHLC fields are overwritten by each trade while volumes and the
    price-level map are additive. ``snapshot()`` returns an immutable copy.
    """

    def __init__(self, symbol: str, timestamp: int, open_price: float,
                 price_precision: int = DEFAULT_PRICE_PRECISION):
        self.symbol = symbol
        self.timestamp = timestamp
        self.price_precision = price_precision

        self.open = open_price
        self.high = open_price
        self.low = open_price
        self.close = open_price

        self.total_volume = 0.0
        self.bid_volume = 0.0
        self.ask_volume = 0.0
        self.delta = 0.0
        self.trade_count = 0
        self._levels: Dict[str, PriceLevelData] = {}

    def apply_trade(self, trade: Trade) -> None:
        price = trade.price
        volume = trade.volume

        if price > self.high:
            self.high = price
        if price < self.low:
            self.low = price
        self.close = price

        key = format_price_key(price, self.price_precision)
        self._levels[key] = self._levels.get(key, PriceLevelData()).add(volume, trade.is_buy)

        if trade.is_buy:
            self.ask_volume += volume
        else:
            self.bid_volume += volume
        self.total_volume += volume
        self.delta = self.ask_volume - self.bid_volume
        self.trade_count += 1

    def snapshot(self) -> FootprintBar:
        return FootprintBar(
            symbol=self.symbol,
            timestamp=self.timestamp,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            total_volume=self.total_volume,
            delta=self.delta,
            bid_volume=self.bid_volume,
            ask_volume=self.ask_volume,
            price_levels=MappingProxyType(dict(self._levels)),
            trade_count=self.trade_count,
        )

    @property
    def is_empty(self) -> bool:
        return self.total_volume <= 0


def bar_is_consistent(bar: FootprintBar, tolerance: float = 1e-9) -> bool:
    """Check the volume and delta identities of a bar."""
    buy = sum(level.buy_volume for level in bar.price_levels.values())
    sell = sum(level.sell_volume for level in bar.price_levels.values())
    scale = max(1.0, abs(bar.total_volume))
    return (
        abs(bar.total_volume - (buy + sell)) <= tolerance * scale
        and abs(bar.ask_volume - buy) <= tolerance * scale
        and abs(bar.bid_volume - sell) <= tolerance * scale
        and abs(bar.delta - (bar.ask_volume - bar.bid_volume)) <= tolerance * scale
    )
