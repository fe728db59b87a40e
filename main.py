#!/usr/bin/env python3
"""Entry point for the Flare Forward relayer.

Loads configuration from the environment and runs the update orchestrator,
either as a long-running service or for a single tick, feed or retry.
"""

import argparse
import asyncio
import json
import logging
import os
import sys


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


logger = logging.getLogger(__name__)

from flare_forward.config import RelayerConfig
from flare_forward.orchestrator import BotStatus, UpdateOrchestrator

EXIT_HALTED = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Flare Forward - attest Uniswap V3 prices into Flare custom feeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  PRIVATE_KEY                    - Key signing all transactions (required)
  FLARE_CHAIN_ID                 - 14 (Flare) or 114 (Coston2), default 14
  FLARE_RPC_URL                  - Flare RPC endpoint
  RPC_URL_<chain_id>             - RPC endpoint override for a source chain
  CUSTOM_FEED_ADDRESS_<ALIAS>    - Feed contract on Flare, one per feed
  FEEDS_FILE                     - JSON feeds file instead of env discovery
  BOT_CHECK_INTERVAL_SECONDS     - Tick interval (default: 60)
  BOT_SELECTED_FEEDS             - Comma separated feed ids to run
  MAX_GAS_PRICE_GWEI             - Gas price ceiling (default: 100)
  LOG_LEVEL                      - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--feeds-file",
        default=None,
        help="Read feeds from this JSON file instead of the environment"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single tick and exit"
    )
    parser.add_argument(
        "--feed",
        default=None,
        help="Update only this feed id once and exit"
    )
    parser.add_argument(
        "--retry-tx",
        default=None,
        metavar="HASH",
        help="Re-run attestation for an already submitted record or relay transaction (needs --feed)"
    )
    return parser.parse_args(argv)


async def main() -> None:
    """Main entry point for the Flare Forward relayer.

    Raises:
        SystemExit: 1 on configuration or fatal errors, 2 when halted
    """
    args = parse_args()
    setup_logging(args.log_level)

    logger.info("=== Flare Forward Relayer Starting ===")

    try:
        config = RelayerConfig.from_env(feeds_file=args.feeds_file)
        config.log_config()
        orchestrator = UpdateOrchestrator.from_config(config)

        if args.retry_tx:
            result = await orchestrator.retry_job(args.retry_tx, args.feed)
            logger.info(f"Result: {json.dumps(result.to_dict())}")
        elif args.feed:
            result = await orchestrator.update_single_feed(args.feed)
            logger.info(f"Result: {json.dumps(result.to_dict())}")
        elif args.once:
            await orchestrator.run_once()
        else:
            await orchestrator.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - PRIVATE_KEY: Key signing all transactions")
        logger.error("  - FLARE_CHAIN_ID / FLARE_RPC_URL: Flare connection")
        logger.error("  - CUSTOM_FEED_ADDRESS_<ALIAS> or FEEDS_FILE: Feeds to update")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
        if 'orchestrator' in locals():
            orchestrator.stop()
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)

    if orchestrator.status is BotStatus.HALTED:
        logger.error(f"Relayer halted: {orchestrator.halt_reason}")
        sys.exit(EXIT_HALTED)


if __name__ == "__main__":
    asyncio.run(main())
