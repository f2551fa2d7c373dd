"""CLI entry point for fsgate."""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from fsgate.config import FsgateConfig, load_config
from fsgate.logging_config import configure_logging
from fsgate.server import create_app

DEFAULT_CONFIG_PATH = Path("fsgate.yaml")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="fsgate",
        description="fsgate - filesystem-backed S3 object gateway",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to YAML configuration file (default: {DEFAULT_CONFIG_PATH}, if present)",
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
        "--root",
        type=str,
        default=None,
        help="Storage root directory (overrides config)",
    )
    parser.add_argument(
        "--access-key",
        action="append",
        default=None,
        help="Allow-listed access key id; repeat for several (replaces config list)",
    )
    parser.add_argument(
        "--no-auth",
        action="store_true",
        help="Disable the access gate (trusted local use only)",
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
    parser.add_argument(
        "--shutdown-timeout",
        type=int,
        default=None,
        help="Graceful shutdown timeout in seconds (default: 30)",
    )
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> FsgateConfig:
    """Load the configuration file and apply command-line overrides.

    An explicitly passed ``--config`` must exist. Without one,
    ``fsgate.yaml`` is used if present and defaults otherwise.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
    """
    if args.config is not None:
        config = load_config(args.config)
    elif DEFAULT_CONFIG_PATH.is_file():
        config = load_config(DEFAULT_CONFIG_PATH)
    else:
        config = FsgateConfig()

    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.root is not None:
        config.storage.root_dir = args.root
    if args.access_key:
        config.auth.allowed_access_keys = list(args.access_key)
    if args.no_auth:
        config.auth.enabled = False
    if args.log_level is not None:
        config.server.log_level = args.log_level
    if args.log_format is not None:
        config.server.log_format = args.log_format
    if args.shutdown_timeout is not None:
        config.server.shutdown_timeout = args.shutdown_timeout
    return config


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the fsgate CLI.

    Loads configuration, applies CLI overrides, and starts the server
    using uvicorn. SIGTERM handling is provided by uvicorn's built-in
    graceful shutdown.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    logger = logging.getLogger("fsgate")

    try:
        config = resolve_config(args)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(1)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    configure_logging(
        level=config.server.log_level,
        fmt=config.server.log_format,
    )

    logger.info(
        "Starting fsgate on %s:%d (root=%s, auth=%s)",
        config.server.host,
        config.server.port,
        config.storage.root_dir,
        "on" if config.auth.enabled else "off",
    )

    app = create_app(config)

    # Single worker: multipart session locks are process-local.
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
