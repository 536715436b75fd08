#!/usr/bin/env python3
"""Entry point for the GLIN explorer engine.

Connects to a GLIN node, keeps the recent-block cache synchronized with the
chain head and logs each new block. ``--search`` runs a single lookup and
prints the result as JSON instead.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv


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

# Get logger for this module
logger = logging.getLogger(__name__)

from glin_explorer.config import ExplorerConfig
from glin_explorer.errors import ExplorerError
from glin_explorer.explorer_engine import ExplorerEngine
from glin_explorer.models import Block


async def run_search(engine: ExplorerEngine, query: str) -> None:
    """Connect, run one search and print the result as JSON."""
    async with engine:
        result = await engine.search(query)
    print(json.dumps(result.to_dict() if result else None, indent=2))


async def follow_blocks(engine: ExplorerEngine, limit: int | None) -> None:
    """Log live blocks until cancelled, or until ``limit`` blocks arrived."""
    done = asyncio.Event()
    received = 0

    def on_new_block(block: Block) -> None:
        nonlocal received
        received += 1
        logger.info(f"{block} timestamp={block.timestamp}")
        if limit is not None and received >= limit:
            done.set()

    subscription = engine.subscribe(on_new_block)
    runner = asyncio.create_task(engine.run(), name="explorer-engine")
    waiter = asyncio.create_task(done.wait(), name="block-limit")
    try:
        await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        subscription.cancel()
        for task in (runner, waiter):
            task.cancel()
        await asyncio.gather(runner, waiter, return_exceptions=True)

    if runner.done() and not runner.cancelled() and (error := runner.exception()):
        raise error


async def main() -> None:
    """Main entry point for the GLIN explorer engine.

    Parses startup arguments, loads configuration from environment,
    and either follows the chain or runs a single search.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    load_dotenv()

    # Parse startup arguments
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="GLIN Explorer Engine - live block sync and entity lookup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_ENDPOINT           - Node websocket endpoint (default: GLIN testnet)
  CONNECT_TIMEOUT        - Connection timeout in seconds (default: 30)
  REORDER_WINDOW         - Seconds to wait for out-of-order blocks (default: 6)
  MAX_RECONNECT_ATTEMPTS - Reconnect attempts before giving up (default: 10)
  CACHE_SIZE             - Number of recent blocks kept (default: 15)
  NOVELTY_SECONDS        - How long a new block is flagged new (default: 10)
  BACKEND_API_URL        - Enrichment backend, empty to disable
  REQUEST_TIMEOUT        - Backend request timeout in seconds (default: 30)
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--search",
        metavar="QUERY",
        help="Search for a block height/hash, account address or task id, print JSON and exit"
    )
    parser.add_argument(
        "--blocks",
        type=int,
        metavar="N",
        help="Exit after N live blocks (default: run until interrupted)"
    )
    args: argparse.Namespace = parser.parse_args()

    # Set up logging with specified level
    setup_logging(args.log_level)

    logger.info("=== GLIN Explorer Engine Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        config: ExplorerConfig = ExplorerConfig.from_env()
        logger.info("Configuration loaded successfully")
        config.log_config()

        engine: ExplorerEngine = ExplorerEngine(config)

        if args.search is not None:
            await run_search(engine, args.search)
        else:
            if args.blocks is not None and args.blocks <= 0:
                raise ValueError(f"--blocks must be positive, got {args.blocks}")
            await follow_blocks(engine, args.blocks)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_ENDPOINT: ws(s):// or http(s):// node endpoint")
        logger.error("  - CACHE_SIZE: between 1 and 1000")
        logger.error("  - BACKEND_API_URL: http(s):// URL or empty")
        sys.exit(1)

    except ExplorerError as e:
        logger.error(f"Explorer Error: {e}")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    # Run the main async function
    asyncio.run(main())
