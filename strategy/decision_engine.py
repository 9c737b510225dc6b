import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from analytics.analytics_engine import AnalyticsEngine, MetricsParams, OrderFlowMetrics
from api.metrics import metrics
from ingest.price_source import PriceSource
from risk.position_sizer import RiskManager
from strategy.position import NewPosition, Position, PositionStatus, Transition
from strategy.position_states import processor_for
from strategy.position_store import PositionStore, PositionStoreError
from strategy.settings import StrategyConfigError, StrategySettings, settings_from_config
from strategy.signal_processor import EntrySignalEvaluator

logger = logging.getLogger(__name__)

EXIT_PERSISTENCE_ERROR = 'persistence_error'


@dataclass
class CycleReport:
    started_at: float = field(default_factory=time.time)
    skipped_reason: Optional[str] = None
    prices: Dict[str, float] = field(default_factory=dict)
    opened: List[Position] = field(default_factory=list)
    closed: List[Position] = field(default_factory=list)
    errored: List[Position] = field(default_factory=list)
    transitions: List[Transition] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


class DecisionEngine:
    """Opens, manages and closes positions once per evaluation cycle.

    The engine is the only writer of position state. Each cycle first
    evaluates entries for monitored symbols without an open position, then
    walks every open position through its state processor. A position gets
    at most one transition per cycle.
    """

    def __init__(self, aggregator, store: PositionStore, price_source: PriceSource,
                 settings_provider: Optional[Callable[[], StrategySettings]] = None,
                 metrics_params: Optional[MetricsParams] = None, config_obj=None):
        self.aggregator = aggregator
        self.store = store
        self.price_source = price_source
        self.settings_provider = settings_provider or (lambda: settings_from_config(config_obj))
        self.analytics = AnalyticsEngine(aggregator, metrics_params, config_obj=config_obj)
        self._quarantined: Set[str] = set()

    @property
    def quarantined(self) -> Set[str]:
        return set(self._quarantined)

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        started = time.monotonic()
        try:
            await self._run_cycle(report)
        finally:
            metrics.record_cycle_latency(time.monotonic() - started)
        return report

    async def _run_cycle(self, report: CycleReport) -> None:
        try:
            settings = self.settings_provider()
        except StrategyConfigError as exc:
            logger.warning("Skipping decision cycle: %s", exc)
            metrics.record_cycle_skipped('config')
            report.skipped_reason = f"config: {exc}"
            return

        try:
            open_positions = await self.store.get_open_positions()
        except PositionStoreError as exc:
            logger.error("Skipping decision cycle, cannot load open positions: %s", exc)
            metrics.record_cycle_skipped('store')
            report.skipped_reason = f"store: {exc}"
            return

        risk = RiskManager(settings)
        evaluator = EntrySignalEvaluator(settings.entry_tolerance_pct)

        symbols = list(settings.monitored_symbols)
        for position in open_positions:
            if position.symbol not in symbols:
                symbols.append(position.symbol)
        try:
            report.prices = await self.price_source.latest_prices(symbols)
        except Exception as exc:
            logger.error("Price lookup failed for %s: %s", ','.join(symbols), exc)
            report.prices = {}
        snapshot: Dict[str, Optional[OrderFlowMetrics]] = self.analytics.snapshot(symbols)

        logger.info(
            "Decision cycle: %s monitored symbol(s), %s open position(s), prices for %s",
            len(settings.monitored_symbols), len(open_positions), sorted(report.prices),
        )

        await self._evaluate_entries(settings, risk, evaluator, open_positions, snapshot, report)

        try:
            positions = await self.store.get_open_positions()
        except PositionStoreError as exc:
            logger.error("Cannot reload open positions for management: %s", exc)
            positions = []
        for position in positions:
            if position.id in self._quarantined:
                continue
            price = report.prices.get(position.symbol)
            if price is None:
                logger.warning("No price for %s; position %s left unchanged this cycle",
                               position.symbol, position.id)
                continue
            await self._manage_position(position, price, snapshot.get(position.symbol), risk, evaluator, report)

        remaining = len(positions) - len(report.closed) - len(report.errored)
        metrics.update_open_positions(max(0, remaining))

    async def _evaluate_entries(self, settings: StrategySettings, risk: RiskManager,
                                evaluator: EntrySignalEvaluator, open_positions: List[Position],
                                snapshot: Dict[str, Optional[OrderFlowMetrics]], report: CycleReport) -> None:
        open_count = len(open_positions)
        open_symbols = {p.symbol for p in open_positions}

        for symbol in settings.monitored_symbols:
            if not risk.can_open(open_count):
                logger.info("Max active positions (%s) reached; no further entries this cycle",
                            settings.max_active_positions)
                break
            if symbol in open_symbols:
                continue
            price = report.prices.get(symbol)
            if price is None:
                logger.warning("No price for %s; skipping entry evaluation", symbol)
                continue
            order_flow = snapshot.get(symbol)
            if order_flow is None:
                continue

            signal = evaluator.evaluate(order_flow, price)
            if signal is None:
                continue

            quantity, stop_price = risk.size_entry(signal.direction, price)
            new = NewPosition(
                symbol=symbol,
                direction=signal.direction,
                entry_price=price,
                quantity=quantity,
                initial_stop_loss_price=stop_price,
                entry_reason=signal.reason,
            )
            try:
                position = await self.store.create_position(new)
            except Exception as exc:
                logger.error("Failed to open %s %s position: %s", signal.direction.value, symbol, exc)
                continue

            open_count += 1
            open_symbols.add(symbol)
            report.opened.append(position)
            report.transitions.append(Transition(
                position.id, symbol, 'none', position.status.value, 'open', reason=signal.reason, position=position,
            ))
            metrics.record_position_opened(signal.direction.value)
            logger.info(
                "Opened %s %s at %.6f qty=%.8f stop=%.6f (%s)",
                signal.direction.value, symbol, price, quantity, stop_price, signal.reason,
            )

    async def _manage_position(self, position: Position, price: float, order_flow: Optional[OrderFlowMetrics],
                               risk: RiskManager, evaluator: EntrySignalEvaluator, report: CycleReport) -> None:
        processor = processor_for(position, risk, evaluator)
        if processor is None:
            return
        action = processor.process(price, order_flow)
        if action is None:
            return

        try:
            updated = await self.store.update_position(position.id, action.updates)
        except Exception as exc:
            logger.error("Persisting %s for position %s (%s) failed: %s",
                         action.kind, position.id, position.symbol, exc)
            await self._mark_error(position, exc, report)
            return

        report.transitions.append(Transition(
            position.id, position.symbol, position.status.value, updated.status.value,
            action.kind, reason=action.reason, position=updated,
        ))
        if action.is_terminal:
            report.closed.append(updated)
            # label by exit kind only; proactive reasons carry free text after the colon
            metrics.record_position_closed((action.reason or action.kind).split(':', 1)[0])
            metrics.record_pnl(updated.pnl)
            logger.info(
                "Closed %s %s %s at %.6f: pnl=%.6f (%.2f%%) reason=%s",
                updated.direction.value, updated.symbol, updated.id, updated.exit_price,
                updated.pnl, updated.pnl_percentage, action.reason,
            )
        elif updated.status is not position.status:
            logger.info("Position %s (%s) %s -> %s at %.6f",
                        position.id, position.symbol, position.status.value, updated.status.value, price)
        else:
            logger.debug("Position %s (%s) trailing extreme now %s",
                         position.id, position.symbol, updated.trailing_extreme_price)

    async def _mark_error(self, position: Position, error: Exception, report: CycleReport) -> None:
        fields = {
            'status': PositionStatus.CLOSED_ERROR,
            'error': str(error),
            'exit_reason': EXIT_PERSISTENCE_ERROR,
            'exit_timestamp': int(time.time() * 1000),
        }
        try:
            errored = await self.store.update_position(position.id, fields)
        except Exception as exc:
            logger.critical("Failed to mark position %s as %s after persistence failure: %s",
                            position.id, PositionStatus.CLOSED_ERROR.value, exc)
            self._quarantined.add(position.id)
            errored = dataclasses.replace(position, **fields)

        report.errored.append(errored)
        report.transitions.append(Transition(
            position.id, position.symbol, position.status.value, PositionStatus.CLOSED_ERROR.value,
            'error', reason=str(error), position=errored,
        ))
        metrics.record_position_closed(EXIT_PERSISTENCE_ERROR)
