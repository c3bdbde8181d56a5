from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from flash_bot.config import load_settings
from flash_bot.errors import ConfigError, ExhaustedRetries
from flash_bot.logging_setup import configure_logging
from flash_bot.pipeline import OpportunityPipeline

LOGGER = logging.getLogger(__name__)

EXIT_EXHAUSTED_RETRIES = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="On-chain liquidation and spread discovery pipeline",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Connect, run a single scan cycle and exit",
    )
    parser.add_argument(
        "--orders",
        action="store_true",
        help="Also poll the open-order source for fillable orders",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override LOG_LEVEL",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    settings = load_settings()
    if args.orders:
        settings = replace(settings, order_source=replace(settings.order_source, enabled=True))
    configure_logging(args.log_level or settings.log_level)

    LOGGER.info(
        "starting chain=%d pool=%s check_interval=%dms min_profit=%s",
        settings.network.chain_id,
        settings.aggregator.pool_address,
        settings.profitability.check_interval_ms,
        settings.profitability.min_profit_threshold,
    )

    pipeline = OpportunityPipeline(settings)
    if args.once:
        await pipeline.start(timers=False)
        try:
            # Give the subscriptions one interval to collect accounts.
            await asyncio.sleep(settings.profitability.check_interval_ms / 1000)
            published = await pipeline.run_cycle()
            LOGGER.info("single cycle published %d opportunities", len(published))
        finally:
            await pipeline.stop()
        return
    await pipeline.run()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        asyncio.run(_run(args))
    except ConfigError as exc:
        logging.basicConfig()
        LOGGER.critical("configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    except ExhaustedRetries as exc:
        LOGGER.critical("shutting down: %s", exc)
        return EXIT_EXHAUSTED_RETRIES
    except KeyboardInterrupt:
        LOGGER.info("stopped by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
