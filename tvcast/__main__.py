"""
tvcast - Entry Point

Run with: python -m tvcast
"""

import argparse
import asyncio
import logging
import sys
import tomllib
from pathlib import Path

from tvcast import __version__
from tvcast.config import load_config
from tvcast.logs import setup_logging
from tvcast.server import CastServer


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="tvcast",
        description="tvcast - DLNA renderer and cast receiver for TV clients",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="TOML file layered over the packaged defaults",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host address to bind to (default: 0.0.0.0)",
    )

    parser.add_argument(
        "--descriptor-port",
        type=int,
        default=None,
        help="DLNA descriptor/control port (default: 9958)",
    )

    parser.add_argument(
        "--receiver-port",
        type=int,
        default=None,
        help="Cast receiver HTTP port (default: 9959)",
    )

    parser.add_argument(
        "--disable",
        action="store_true",
        help="Start with casting disabled (nothing is bound)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser.parse_args()


def main() -> int:
    """Main entry point for the application."""
    args = parse_args()

    try:
        config = load_config(args.config)
    except (OSError, tomllib.TOMLDecodeError) as e:
        setup_logging(verbose=args.verbose)
        logging.getLogger(__name__).error("Cannot load config %s: %s", args.config, e)
        return 1

    config = config.with_overrides(
        host=args.host,
        descriptor_port=args.descriptor_port,
        receiver_port=args.receiver_port,
        enabled=False if args.disable else None,
    )

    setup_logging(verbose=args.verbose, log_dir=Path(config.log_dir))

    logger = logging.getLogger(__name__)
    logger.info("Starting tvcast...")

    try:
        asyncio.run(CastServer(config).run())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1

    logger.info("tvcast stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
