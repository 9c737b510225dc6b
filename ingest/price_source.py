import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable


logger = logging.getLogger(__name__)


class PriceUnavailableError(Exception):
    def __init__(self, symbol: str, reason: str):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"No price for {symbol}: {reason}")


class PriceSource(ABC):
    @abstractmethod
    async def latest_price(self, symbol: str) -> float:
        pass

    async def latest_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Prices for every symbol that has one; unavailable symbols are omitted."""
        prices = {}
        for symbol in symbols:
            try:
                prices[symbol] = await self.latest_price(symbol)
            except PriceUnavailableError:
                continue
            except Exception as exc:
                logger.error("Price lookup for %s failed: %s", symbol, exc)
                continue
        return prices

    async def close(self) -> None:
        return None


class AggregatorPriceSource(PriceSource):
    """Last traded price taken from the live footprint bar, else the last completed bar."""

    def __init__(self, aggregator):
        self.aggregator = aggregator

    async def latest_price(self, symbol: str) -> float:
        bars, current = self.aggregator.window(symbol, 1)
        if current is not None and current.total_volume > 0:
            return float(current.close)
        if bars:
            return float(bars[-1].close)
        raise PriceUnavailableError(symbol, "no trades aggregated yet")
