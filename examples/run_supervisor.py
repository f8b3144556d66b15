"""
Minimal sessionguard runner.

Usage:
    python examples/run_supervisor.py [--config PATH]

Options:
    --config PATH   JSON config file (default: config.json next to this script)
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from sessionguard.app import Application
from sessionguard.config import ConfigError, load_config

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def main() -> None:
    parser = argparse.ArgumentParser(description="sessionguard supervisor")
    parser.add_argument(
        "--config", type=Path, default=Path(__file__).resolve().parent / "config.json"
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("%s", e)
        sys.exit(1)
    logging.getLogger().setLevel(config.log_level)

    app = Application(config)
    logger.info(
        "sessionguard starting (bridge=%s, code_mode=%s)",
        config.bridge_url,
        config.code_mode,
    )

    try:
        await app.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await app.stop()
        logger.info("supervisor stopped")


if __name__ == "__main__":
    asyncio.run(main())
