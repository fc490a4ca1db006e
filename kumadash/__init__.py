"""kumadash - Multi-page status dashboard proxy for Uptime Kuma."""

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Optional

__version__ = "0.1.0"

DEFAULT_CONFIG_PATH = "config.yaml"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _resolve_config_path(path: Optional[str]) -> Optional[str]:
    """Use config.yaml from the working directory when no path was given."""
    if path is not None:
        return path
    if Path(DEFAULT_CONFIG_PATH).exists():
        return DEFAULT_CONFIG_PATH
    return None


def _load(args: argparse.Namespace):
    """Load configuration and apply process-wide transport settings."""
    from .config import load_config
    from .transport import set_allow_insecure_tls

    config_path = _resolve_config_path(args.config)
    config = load_config(config_path)
    set_allow_insecure_tls(config.fetch.allow_insecure_tls)
    logger.info("Configuration loaded from %s", config_path or "environment")
    return config


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the dashboard server."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("kumadash %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .api import ApiError, ApiServer
    from .errors import ConfigError

    # 1. Load configuration
    try:
        config = _load(args)
        logger.info("Serving %d status page(s), default page %s", len(config.page_ids), config.default_page)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 3. Start server
    api_server = ApiServer(config)
    try:
        api_server.start()
    except ApiError as e:
        logger.error("Failed to start API server: %s", e)
        sys.exit(1)

    try:
        logger.info("Dashboard available on port %d, waiting for shutdown signal...", config.server.port)

        # 4. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 5. Cleanup
        api_server.stop()
        logger.info("Shutdown complete")


def _cmd_check(args: argparse.Namespace) -> None:
    """Execute the check command - resolve every page once and print its health."""
    _setup_logging(args.verbose)

    from .errors import ConfigError
    from .services import DataService
    from .tabs import build_page_tabs

    # 1. Load configuration
    try:
        config = _load(args)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 2. Resolve tabs
    result = build_page_tabs(DataService(config))

    # 3. Display results
    for tab in result.tabs:
        if tab.health == "healthy":
            print(f"✓ {tab.id}: {tab.title}")
        else:
            status = f" [{tab.failure_status_code}]" if tab.failure_status_code else ""
            print(f"✗ {tab.id}: {tab.failure_type}{status} {tab.failure_message}")

    print(f"\nResult: {result.matrix.status} ({len(result.tabs) - len(result.matrix.failed_page_ids)}/{len(result.tabs)} pages healthy)")

    if result.matrix.status != "ok":
        sys.exit(1)


def main() -> None:
    """Main entry point for the kumadash package."""
    parser = argparse.ArgumentParser(
        description="kumadash - Multi-page status dashboard for Uptime Kuma"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"kumadash {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the dashboard server (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to configuration file (default: config.yaml if present, else environment only)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Check subcommand
    check_parser = subparsers.add_parser(
        "check",
        help="Resolve every status page once and report its health",
    )
    check_parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to configuration file (default: config.yaml if present, else environment only)",
    )
    check_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    check_parser.set_defaults(func=_cmd_check)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
