"""CLI entry point for sigv4auth."""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from sigv4auth.config import load_config
from sigv4auth.logging_config import configure_logging
from sigv4auth.server import create_app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="sigv4auth",
        description="sigv4auth - AWS SigV4 request verification service",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("sigv4auth.yaml"),
        help="Path to YAML configuration file (default: sigv4auth.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host address to bind to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (overrides config)",
    )
    parser.add_argument(
        "--region",
        type=str,
        default=None,
        help="Expected credential scope region, or '*' for any (overrides config)",
    )
    parser.add_argument(
        "--service",
        type=str,
        default=None,
        help="Expected credential scope service (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the sigv4auth CLI.

    Loads configuration, applies CLI overrides, and serves the app with
    uvicorn.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Use a basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    logger = logging.getLogger("sigv4auth")

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.region is not None:
        config.auth.region = args.region
    if args.service is not None:
        config.auth.service = args.service
    if args.log_level is not None:
        config.server.log_level = args.log_level
    if args.log_format is not None:
        config.server.log_format = args.log_format

    configure_logging(level=config.server.log_level, fmt=config.server.log_format)

    if config.auth.enabled and not config.auth.credentials:
        logger.warning("No credentials configured; every signed request will be rejected")

    logger.info(
        "Starting sigv4auth on %s:%d (service=%s, region=%s)",
        config.server.host,
        config.server.port,
        config.auth.service,
        config.auth.region,
    )

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        timeout_graceful_shutdown=config.server.shutdown_timeout,
        timeout_keep_alive=5,
    )


if __name__ == "__main__":
    main()
