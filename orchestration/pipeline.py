import asyncio
import logging
from typing import Iterable, Optional

from analytics.aggregator import BarAggregator
from analytics.analytics_engine import MetricsParams
from config import config as global_config, get_config_section
from ingest.binance_rest import BinancePriceSource
from ingest.price_source import AggregatorPriceSource, PriceSource
from ingest.websocket_client import TradeStreamClient
from monitoring.async_utils import run_tasks_with_cleanup
from orchestration.event_bus import BarEventBus
from strategy.decision_engine import DecisionEngine
from strategy.position_store import PositionStore
from strategy.settings import settings_from_config
from strategy.simulators.paper import PaperPositionStore


logger = logging.getLogger(__name__)


class FootprintPipeline:
    """Owns every component of the pipeline and their start/stop lifecycle.

    Trade stream -> aggregator (publishes bar events on the bus) -> decision
    engine cycles on a fixed interval -> position store.
    """

    def __init__(self, config_obj=None, store: Optional[PositionStore] = None,
                 price_source: Optional[PriceSource] = None, connector=None):
        self.config = config_obj or global_config
        self.decision_cfg = get_config_section(self.config, 'decision')
        self.cycle_interval_s = float(self.decision_cfg.get('cycle_interval_s', 30))

        self.event_bus = BarEventBus(config_obj=self.config)
        self.aggregator = BarAggregator(event_bus=self.event_bus, config_obj=self.config)
        self.stream = TradeStreamClient(self.aggregator, connector=connector, config_obj=self.config)
        self.store = store or PaperPositionStore()
        self.price_source = price_source or self._build_price_source()
        self.engine = DecisionEngine(
            self.aggregator,
            self.store,
            self.price_source,
            settings_provider=lambda: settings_from_config(self.config),
            metrics_params=MetricsParams.from_config(self.config),
            config_obj=self.config,
        )

        self.running = False
        self._decision_task: Optional[asyncio.Task] = None

    def _build_price_source(self) -> PriceSource:
        kind = str(self.decision_cfg.get('price_source', 'aggregator')).lower()
        if kind == 'binance':
            return BinancePriceSource()
        if kind != 'aggregator':
            logger.warning("Unknown price source %r; using aggregator prices", kind)
        return AggregatorPriceSource(self.aggregator)

    async def start(self, symbols: Optional[Iterable[str]] = None) -> None:
        if symbols is None:
            symbols = settings_from_config(self.config).monitored_symbols
        await self.stream.start(symbols)
        if self._decision_task is None or self._decision_task.done():
            self._decision_task = asyncio.create_task(self._decision_loop(), name="decision-loop")
        self.running = True
        logger.info("Footprint pipeline started for %s", ','.join(self.stream.symbols))

    async def run(self, symbols: Optional[Iterable[str]] = None) -> None:
        """Start and block until cancelled, then shut everything down."""
        await self.start(symbols)
        tasks = [self._decision_task]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def _decision_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cycle_interval_s)
            try:
                report = await self.engine.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Decision cycle failed: %s", exc)
                continue
            if report.opened or report.closed or report.errored:
                logger.info(
                    "Cycle result: opened=%s closed=%s errored=%s",
                    len(report.opened), len(report.closed), len(report.errored),
                )

    async def stop(self) -> None:
        if not self.running and self._decision_task is None:
            return
        self.running = False
        task, self._decision_task = self._decision_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.stream.stop()
        self.aggregator.flush()
        self.event_bus.close()
        await self.price_source.close()
        await self.store.close()
        logger.info("Footprint pipeline stopped")
