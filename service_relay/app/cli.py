"""
Command line entry point for the metrics relay.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from shared.config import load_settings
from shared.errors import ConfigError
from shared.logging import configure_logging, get_logger
from shared.tracing import configure_tracing
from . import __version__
from .auth.bearer_tokens import BearerTokenAllower
from .lifecycle import RelayLifecycle

logger = get_logger("relay.cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="metrics-relay",
        description="Relay metric submissions to an upstream time-series endpoint",
    )
    parser.add_argument(
        "-c", "--config",
        default="./metrics-relay.yaml",
        help="Specify the config file path to use",
    )
    parser.add_argument(
        "-b", "--bearer-tokens-path",
        default=None,
        help="Specify the bearer tokens file path to use",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        configure_logging("relay")
        logger.error("Error loading config", error=e.message)
        return 1

    configure_logging("relay", settings.log_level)
    if settings.enable_tracing:
        configure_tracing(
            "metrics-relay",
            settings.otel_exporter,
            settings.enable_console_tracing,
            version=__version__,
        )

    # no path disables auth; a bad path is fatal
    try:
        allower = BearerTokenAllower.from_path(args.bearer_tokens_path)
    except ConfigError as e:
        logger.error("Error creating bearer token provider", error=e.message)
        return 1

    lifecycle = RelayLifecycle(settings, allower)
    try:
        asyncio.run(lifecycle.serve())
    except ConfigError as e:
        logger.error("Invalid listen configuration", error=e.message)
        return 1
    except OSError as e:
        logger.error("Unable to bind listener", error=str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
