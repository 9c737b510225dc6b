import asyncio
import json
import logging
import math
from typing import Any, Iterable, Optional, Tuple

import websockets

from analytics.footprint import Trade
from api.metrics import metrics
from config import config as global_config, get_config_section


logger = logging.getLogger(__name__)

DEFAULT_STREAM_URL = "wss://fstream.binance.com/stream"


def _drop(reason: str, detail: Any) -> None:
    logger.warning("Dropping trade message (%s): %.200s", reason, detail)
    metrics.record_drop(reason)


def parse_trade_message(payload: Any) -> Optional[Tuple[str, Trade]]:
    """Parse a combined-stream trade event into ``(symbol, Trade)``.

    Returns None for anything that must not reach the aggregator.
    """
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            payload = json.loads(payload)
        except ValueError:
            _drop('invalid_json', payload)
            return None
    if not isinstance(payload, dict):
        _drop('unexpected_payload', payload)
        return None

    event = payload.get('data', payload)
    if not isinstance(event, dict):
        _drop('unexpected_payload', payload)
        return None
    event_type = event.get('e')
    if event_type is not None and event_type != 'trade':
        logger.debug("Ignoring %s event on trade stream", event_type)
        return None

    try:
        symbol = str(event['s']).upper()
        trade_id = int(event['t'])
        time_ms = int(event['T'])
        price = float(event['p'])
        quantity = float(event['q'])
        is_buyer_maker = event['m']
    except (KeyError, TypeError, ValueError) as exc:
        _drop('malformed', f"{exc!r} in {event}")
        return None

    if not isinstance(is_buyer_maker, bool):
        _drop('malformed', f"maker flag {is_buyer_maker!r} in {event}")
        return None
    if not math.isfinite(price) or price <= 0 or not math.isfinite(quantity) or quantity <= 0:
        _drop('invalid_value', event)
        return None

    return symbol, Trade.from_maker_flag(trade_id, time_ms, price, quantity, is_buyer_maker)


class TradeStreamClient:
    """One multiplexed trade stream for a set of symbols, feeding the aggregator.

    Reconnects with ``base * 2**(attempt - 1)`` delays. Once
    ``max_reconnect_attempts`` is exhausted the client stays down until the
    next ``start()``. ``stop()`` disables reconnection before closing.
    """

    def __init__(self, aggregator, connector=None, config_obj=None,
                 base_delay_s: Optional[float] = None, max_attempts: Optional[int] = None):
        source = config_obj or global_config
        ws_cfg = get_config_section(source, 'websocket')
        exchange_cfg = get_config_section(source, 'exchange')

        self.aggregator = aggregator
        self.connector = connector or websockets.connect
        self.stream_url = (exchange_cfg.get('stream_url') or DEFAULT_STREAM_URL).rstrip('/')
        self.base_delay_s = float(base_delay_s if base_delay_s is not None else ws_cfg.get('reconnect_base_delay_s', 1.0))
        self.max_attempts = int(max_attempts if max_attempts is not None else ws_cfg.get('max_reconnect_attempts', 10))
        self.ping_interval = ws_cfg.get('ping_interval_s', 20)
        self.open_timeout = ws_cfg.get('open_timeout_s', 10)

        self.symbols: Tuple[str, ...] = ()
        self.reconnect_attempts = 0
        self.halted = False
        self.messages_received = 0
        self._task: Optional[asyncio.Task] = None
        self._ws = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def build_url(self, symbols: Iterable[str]) -> str:
        streams = '/'.join(f"{symbol.lower()}@trade" for symbol in symbols)
        return f"{self.stream_url}?streams={streams}"

    async def start(self, symbols: Iterable[str]) -> None:
        normalized = tuple(sorted({s.strip().upper() for s in symbols if s and s.strip()}))
        if not normalized:
            raise ValueError("At least one symbol is required")
        if self.running and normalized == self.symbols:
            logger.debug("Trade stream already running for %s", ','.join(normalized))
            return
        if self._task is not None:
            if normalized == self.symbols:
                logger.info("Restarting trade stream for %s after halt", ','.join(normalized))
            else:
                logger.info("Symbol set changed %s -> %s; reconnecting", self.symbols, normalized)
            await self._teardown()

        self.symbols = normalized
        self.reconnect_attempts = 0
        self.halted = False
        self._task = asyncio.create_task(self._run(), name="trade-stream")

    async def stop(self) -> None:
        self.reconnect_attempts = self.max_attempts + 1
        await self._teardown()
        self.reconnect_attempts = 0
        logger.info("Trade stream stopped")

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _teardown(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (websockets.WebSocketException, OSError) as exc:
                logger.debug("Error closing trade stream: %s", exc)
        metrics.set_stream_connected(False)

    def _next_reconnect_delay(self) -> Optional[float]:
        if self.reconnect_attempts > self.max_attempts:
            # stop() in progress
            return None
        if self.reconnect_attempts == self.max_attempts:
            logger.critical(
                "Trade stream for %s failed %s reconnect attempts; giving up until the next start()",
                ','.join(self.symbols), self.max_attempts,
            )
            return None
        self.reconnect_attempts += 1
        return self.base_delay_s * 2 ** (self.reconnect_attempts - 1)

    async def _run(self) -> None:
        url = self.build_url(self.symbols)
        while True:
            try:
                async with self.connector(url, ping_interval=self.ping_interval,
                                          open_timeout=self.open_timeout) as ws:
                    self._ws = ws
                    self.reconnect_attempts = 0
                    metrics.set_stream_connected(True)
                    logger.info("Trade stream connected for %s", ','.join(self.symbols))
                    async for raw in ws:
                        self.handle_message(raw)
                    logger.warning("Trade stream closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Trade stream error: %s", e)
            finally:
                self._ws = None
                metrics.set_stream_connected(False)

            delay = self._next_reconnect_delay()
            if delay is None:
                self.halted = True
                return
            metrics.record_reconnect()
            logger.info("Reconnecting in %.1fs (attempt %s/%s)", delay, self.reconnect_attempts, self.max_attempts)
            await asyncio.sleep(delay)

    def handle_message(self, raw: Any) -> None:
        self.messages_received += 1
        parsed = parse_trade_message(raw)
        if parsed is None:
            return
        symbol, trade = parsed
        self.aggregator.ingest(symbol, trade)
