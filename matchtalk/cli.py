"""
MatchTalk network client CLI.

Usage:
    python -m matchtalk.cli health
    python -m matchtalk.cli --config client.json config
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from matchtalk.adapters.resilient_client import HealthResult
from matchtalk.client import NetworkClient
from matchtalk.core.config import ClientConfig, load_config
from matchtalk.core.exceptions import ConfigurationError
from matchtalk.core.structured_logging import configure_logging

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="MatchTalk network client tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Probe the backend health endpoint
    python -m matchtalk.cli health

    # Print the effective configuration (file + MATCHTALK_* env)
    python -m matchtalk.cli --config client.json config
        """,
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON config file (default: defaults + environment)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override log level (default: from config)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    health = subparsers.add_parser("health", help="Probe backend health")
    health.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Health check timeout in seconds (default: from config)",
    )
    subparsers.add_parser("config", help="Print effective configuration")
    return parser.parse_args(argv)


async def run_health(config: ClientConfig) -> HealthResult:
    async with NetworkClient(config) as client:
        return await client.http.check_health()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    configure_logging(
        level=(args.log_level or config.logging.level).upper(),
        json_format=config.logging.json_format,
        log_file=config.logging.log_file,
    )

    if args.command == "config":
        print(json.dumps(config.model_dump(mode="json"), indent=2))
        return 0

    if args.timeout is not None:
        config.api.health_timeout = args.timeout

    try:
        result = asyncio.run(run_health(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130

    print(
        json.dumps(
            {
                "url": config.api.base_url + config.api.health_path,
                "healthy": result.healthy,
                "status": result.status,
                "latency_ms": round(result.latency_ms, 1),
                "error": result.error,
            }
        )
    )
    return 0 if result.healthy else 1


if __name__ == "__main__":
    sys.exit(main())
