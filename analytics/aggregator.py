import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from analytics.footprint import (
    DEFAULT_PRICE_PRECISION,
    FootprintBar,
    FootprintBarBuilder,
    Trade,
    align_timestamp,
)
from api.metrics import metrics
from config import config as global_config, get_config_section


logger = logging.getLogger(__name__)


class SymbolBarState:
    """Registry entry for one symbol: the live builder plus finalized history."""

    def __init__(self, symbol: str, history_size: int):
        self.symbol = symbol
        self.lock = threading.Lock()
        self.current: Optional[FootprintBarBuilder] = None
        self.history: Deque[FootprintBar] = deque(maxlen=history_size)


class BarAggregator:
    """Turns a trade stream into fixed-interval footprint bars per symbol.

    Each symbol has exactly one writer path guarded by its own lock. Readers
    only receive immutable ``FootprintBar`` snapshots taken under that lock.
    Trades are trusted to arrive in feed order; a trade whose aligned
    timestamp differs from the current bar always finalizes it.
    """

    def __init__(self, event_bus=None, interval_ms: Optional[int] = None,
                 price_precision: Optional[int] = None, history_size: Optional[int] = None,
                 config_obj=None):
        cfg = get_config_section(config_obj or global_config, 'footprint')
        self.interval_ms = int(interval_ms or cfg.get('interval_ms', 60_000))
        precision = price_precision if price_precision is not None else cfg.get('price_precision')
        self.price_precision = int(precision if precision is not None else DEFAULT_PRICE_PRECISION)
        self.history_size = int(history_size or cfg.get('history_size', 100))
        if self.interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self.history_size <= 0:
            raise ValueError("history_size must be positive")

        self.event_bus = event_bus
        self._states: Dict[str, SymbolBarState] = {}
        self._registry_lock = threading.Lock()

    def _state(self, symbol: str) -> SymbolBarState:
        state = self._states.get(symbol)
        if state is None:
            with self._registry_lock:
                state = self._states.get(symbol)
                if state is None:
                    state = SymbolBarState(symbol, self.history_size)
                    self._states[symbol] = state
        return state

    def ingest(self, symbol: str, trade: Trade) -> FootprintBar:
        """Apply one trade and return the updated partial bar snapshot."""
        symbol = symbol.upper()
        state = self._state(symbol)
        aligned = align_timestamp(trade.time, self.interval_ms)

        with state.lock:
            if state.current is None or state.current.timestamp != aligned:
                self._finalize_locked(state)
                state.current = FootprintBarBuilder(
                    symbol, aligned, trade.price, price_precision=self.price_precision
                )
            state.current.apply_trade(trade)
            snapshot = state.current.snapshot()
            if self.event_bus is not None:
                self.event_bus.publish_updated(snapshot)

        metrics.record_trade(symbol)
        return snapshot

    def _finalize_locked(self, state: SymbolBarState) -> Optional[FootprintBar]:
        builder = state.current
        state.current = None
        if builder is None or builder.is_empty:
            return None
        bar = builder.snapshot()
        state.history.append(bar)
        metrics.record_bar_completed(state.symbol)
        logger.debug(
            "Finalized %s bar %s: o=%s h=%s l=%s c=%s vol=%.6f delta=%.6f",
            bar.symbol, bar.timestamp, bar.open, bar.high, bar.low, bar.close,
            bar.total_volume, bar.delta,
        )
        if self.event_bus is not None:
            self.event_bus.publish_completed(bar)
        return bar

    def flush(self, symbol: Optional[str] = None) -> List[FootprintBar]:
        """Finalize open bars, e.g. on explicit stream stop."""
        if symbol is not None:
            states = [self._states[symbol.upper()]] if symbol.upper() in self._states else []
        else:
            states = list(self._states.values())
        finalized = []
        for state in states:
            with state.lock:
                bar = self._finalize_locked(state)
            if bar is not None:
                finalized.append(bar)
        if finalized:
            logger.info("Flushed %s open bar(s)", len(finalized))
        return finalized

    def latest_bars(self, symbol: str, count: Optional[int] = None) -> List[FootprintBar]:
        """Most recent finalized bars, oldest first."""
        state = self._states.get(symbol.upper())
        if state is None:
            return []
        with state.lock:
            bars = list(state.history)
        if count is not None:
            if count <= 0:
                return []
            bars = bars[-count:]
        return bars

    def current_bar(self, symbol: str) -> Optional[FootprintBar]:
        state = self._states.get(symbol.upper())
        if state is None:
            return None
        with state.lock:
            return state.current.snapshot() if state.current is not None else None

    def window(self, symbol: str, count: Optional[int] = None) -> Tuple[List[FootprintBar], Optional[FootprintBar]]:
        """Finalized bars (oldest first) and the live bar, read under one lock."""
        state = self._states.get(symbol.upper())
        if state is None:
            return [], None
        with state.lock:
            bars = list(state.history)
            current = state.current.snapshot() if state.current is not None else None
        if count is not None:
            bars = bars[-count:] if count > 0 else []
        return bars, current

    def symbols(self) -> List[str]:
        return sorted(self._states)

    def reset(self, symbol: Optional[str] = None) -> None:
        with self._registry_lock:
            if symbol is None:
                self._states.clear()
            else:
                self._states.pop(symbol.upper(), None)
