import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from analytics.footprint import FootprintBar
from api.metrics import metrics
from config import config as global_config, get_config_section


logger = logging.getLogger(__name__)


class BarEventKind(str, Enum):
    COMPLETED = "completed"
    UPDATED = "updated"


@dataclass(frozen=True)
class BarEvent:
    kind: BarEventKind
    bar: FootprintBar

    @property
    def symbol(self) -> str:
        return self.bar.symbol

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.kind.value, 'symbol': self.bar.symbol, 'bar': self.bar.to_dict()}


class BarEventSink(Protocol):
    async def on_bar_completed(self, bar: FootprintBar) -> None:
        ...

    async def on_bar_updated(self, bar: FootprintBar) -> None:
        ...


class Subscription:
    """Bounded delivery queue owned by one subscriber.

    A full queue drops its oldest event so the publisher never waits. A
    subscriber that overflows on more than ``max_overflows`` consecutive
    publishes without reading is evicted by the bus.
    """

    def __init__(self, bus: 'BarEventBus', maxsize: int, max_overflows: int,
                 symbols: Optional[List[str]] = None, name: Optional[str] = None):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.max_overflows = max_overflows
        self.symbols = {s.upper() for s in symbols} if symbols else None
        self.name = name or f"sub-{id(self):x}"
        self.dropped = 0
        self.overflow_streak = 0
        self.closed = False

    def accepts(self, event: BarEvent) -> bool:
        return self.symbols is None or event.symbol.upper() in self.symbols

    def offer(self, event: BarEvent) -> bool:
        """Enqueue without blocking. Returns False once the subscriber should be evicted."""
        if self.closed:
            return False
        if self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.dropped += 1
            self.overflow_streak += 1
            metrics.record_subscriber_drop()
            if self.overflow_streak > self.max_overflows:
                return False
        self._queue.put_nowait(event)
        return True

    async def get(self) -> Optional[BarEvent]:
        """Next event, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        event = await self._queue.get()
        self.overflow_streak = 0
        return event

    def get_nowait(self) -> Optional[BarEvent]:
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self.overflow_streak = 0
        return event

    def pending(self) -> int:
        return self._queue.qsize()

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> BarEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class BarEventBus:
    def __init__(self, queue_size: Optional[int] = None, max_overflows: Optional[int] = None,
                 config_obj=None):
        cfg = get_config_section(config_obj or global_config, 'events')
        self.queue_size = int(queue_size or cfg.get('subscriber_queue_size', 256))
        self.max_overflows = int(max_overflows or cfg.get('max_subscriber_overflows', 1000))
        self._subscribers: List[Subscription] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, symbols: Optional[List[str]] = None, name: Optional[str] = None,
                  queue_size: Optional[int] = None) -> Subscription:
        if self._closed:
            raise RuntimeError("Event bus is closed")
        sub = Subscription(
            self,
            maxsize=queue_size or self.queue_size,
            max_overflows=self.max_overflows,
            symbols=symbols,
            name=name,
        )
        self._subscribers.append(sub)
        logger.info("Subscriber %s registered (symbols=%s)", sub.name, sorted(sub.symbols) if sub.symbols else 'all')
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.info("Subscriber %s removed", subscription.name)
        subscription._close()

    def publish(self, event: BarEvent) -> None:
        evicted = []
        # Iterate over a copy so eviction does not disturb the loop
        for sub in list(self._subscribers):
            if not sub.accepts(event):
                continue
            if not sub.offer(event):
                evicted.append(sub)
        for sub in evicted:
            logger.warning(
                "Evicting subscriber %s after %s consecutive overflows",
                sub.name, sub.overflow_streak,
            )
            metrics.record_subscriber_eviction()
            self.unsubscribe(sub)

    def publish_completed(self, bar: FootprintBar) -> None:
        self.publish(BarEvent(BarEventKind.COMPLETED, bar))

    def publish_updated(self, bar: FootprintBar) -> None:
        self.publish(BarEvent(BarEventKind.UPDATED, bar))

    def close(self) -> None:
        self._closed = True
        for sub in list(self._subscribers):
            self.unsubscribe(sub)


async def run_sink(subscription: Subscription, sink: BarEventSink) -> None:
    """Pump events from a subscription into an ``on_bar_*`` sink until it closes."""
    async for event in subscription:
        try:
            if event.kind is BarEventKind.COMPLETED:
                await sink.on_bar_completed(event.bar)
            else:
                await sink.on_bar_updated(event.bar)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Bar sink %s failed on %s event for %s: %s",
                         subscription.name, event.kind.value, event.symbol, exc)
