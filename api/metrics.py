import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config, get_config_section


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(get_config_section(config, 'monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.trade_count = Counter('footprint_trades_processed_total', 'Total trades applied to footprint bars', ['symbol'])
        self.dropped_events = Counter('footprint_dropped_messages_total', 'Total dropped inbound feed messages', ['reason'])
        self.bars_completed = Counter('footprint_bars_completed_total', 'Total finalized footprint bars', ['symbol'])

        self.reconnect_count = Counter('footprint_stream_reconnects_total', 'Total trade stream reconnect attempts')
        self.stream_connected = Gauge('footprint_stream_connected', 'Trade stream connection state (1=open)')

        self.subscriber_drops = Counter('footprint_subscriber_drops_total', 'Bar events dropped from full subscriber queues')
        self.subscriber_evictions = Counter('footprint_subscriber_evictions_total', 'Subscribers evicted after repeated overflows')

        self.positions_opened = Counter('positions_opened_total', 'Total positions opened', ['direction'])
        self.positions_closed = Counter('positions_closed_total', 'Total closed positions', ['reason'])
        self.open_positions = Gauge('positions_open', 'Currently open positions')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')

        self.cycle_latency = Histogram('decision_cycle_latency_seconds', 'Decision engine cycle duration')
        self.cycles_skipped = Counter('decision_cycles_skipped_total', 'Decision cycles skipped', ['reason'])

    def record_trade(self, symbol: str):
        self.trade_count.labels(symbol=symbol).inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def record_bar_completed(self, symbol: str):
        self.bars_completed.labels(symbol=symbol).inc()

    def record_reconnect(self):
        self.reconnect_count.inc()

    def set_stream_connected(self, connected: bool):
        self.stream_connected.set(1 if connected else 0)

    def record_subscriber_drop(self):
        self.subscriber_drops.inc()

    def record_subscriber_eviction(self):
        self.subscriber_evictions.inc()

    def record_position_opened(self, direction: str):
        self.positions_opened.labels(direction=direction).inc()

    def record_position_closed(self, reason: str):
        self.positions_closed.labels(reason=reason).inc()

    def update_open_positions(self, count: int):
        self.open_positions.set(count)

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def record_cycle_latency(self, seconds: float):
        self.cycle_latency.observe(seconds)

    def record_cycle_skipped(self, reason: str):
        self.cycles_skipped.labels(reason=reason).inc()


def start_metrics_server(port: Optional[int] = None, port_scan: Optional[int] = None) -> Optional[int]:
    """Expose the default registry over HTTP; returns the bound port.

    Tries ``port`` and up to ``port_scan`` following ports when the address
    is in use. Port 0 disables the endpoint. Only the first call binds.
    """
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT

    monitoring_cfg = get_config_section(config, 'monitoring')
    if port is None:
        port = int(monitoring_cfg.get('prometheus_port', 9108))
    if port == 0:
        logger.info("Prometheus metrics endpoint disabled")
        return None
    if port_scan is None:
        port_scan = _get_port_scan_limit()

    candidates = range(port, port + max(0, port_scan) + 1)
    for candidate in candidates:
        try:
            start_http_server(candidate)
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                raise
            logger.warning("Metrics port %s in use; trying the next one", candidate)
            continue
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    raise RuntimeError(f"Unable to bind Prometheus metrics server on ports {candidates.start}-{candidates.stop - 1}")


metrics = MetricsCollector()
