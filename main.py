import argparse
import asyncio
import logging

from api.metrics import start_metrics_server
from config import Config, config, get_config_section
from monitoring.logging_utils import setup_logging
from orchestration.pipeline import FootprintPipeline


logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Footprint order-flow pipeline")
    parser.add_argument('--config', help="path to a YAML config (default: FOOTPRINT_CONFIG or config/config.yaml)")
    parser.add_argument('--symbols', help="comma-separated symbols; defaults to strategy.monitored_symbols")
    parser.add_argument('--log-level', default=None, help="logging level (default: FOOTPRINT_LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


async def main(args: argparse.Namespace):
    cfg = Config(args.config) if args.config else config
    start_metrics_server(int(get_config_section(cfg, 'monitoring').get('prometheus_port', 9108)))

    symbols = [s for s in args.symbols.split(',') if s.strip()] if args.symbols else None
    pipeline = FootprintPipeline(cfg)
    try:
        await pipeline.run(symbols)
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Pipeline shutting down on interrupt")
        await pipeline.stop()

if __name__ == "__main__":
    cli_args = parse_args()
    setup_logging(cli_args.log_level)
    asyncio.run(main(cli_args))
