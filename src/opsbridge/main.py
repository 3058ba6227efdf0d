"""
opsbridge entry point.

This file handles startup concerns (arg-parsing, env setup, logging) and launches the appropriate
interface (API or CLI).
"""

import argparse
import logging
import os
import sys
import threading
from pathlib import Path

from opsbridge.api.app import run_api
from opsbridge.config import (
    Settings,
    settings,
)

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))


def _ensure_data_dir(config: Settings) -> None:
    data_dir = Path(config.DATA_DIR)
    data_dir.mkdir(parents=True, exist_ok=True)
    if not data_dir.is_dir() or not os.access(data_dir, os.W_OK):
        logger.error("Data directory is not writable: %s", data_dir)
        sys.exit(1)


def _build_parser(config: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the opsbridge operations assistant")
    parser.add_argument(
        "--mode",
        choices=["api", "cli"],
        type=str.lower,
        default="api",
        help="Serve the REST API, or serve it in the background and open an interactive shell",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=config.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    parser.add_argument("--host", default="0.0.0.0", help="API bind address")
    parser.add_argument("--port", type=int, default=config.API_PORT, help="API port (default: %(default)s)")
    parser.add_argument("--planner", default=None, help="Planner backend, e.g. openai, anthropic, tgi, ci")
    parser.add_argument("--gateway-url", default=None, help="Base URL of a remote tool gateway")
    parser.add_argument(
        "--actor",
        default=None,
        help="Actor id sent by the CLI client (default: current OS user)",
    )
    return parser


def _apply_overrides(args: argparse.Namespace, config: Settings) -> None:
    config.LOG_LEVEL = args.log_level
    config.API_PORT = args.port
    if args.planner:
        config.PLANNER = args.planner.lower()
    if args.gateway_url:
        config.GATEWAY_URL = args.gateway_url


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the opsbridge application.

    Command-line flags override the matching environment settings before anything is built, so
    the API process and the lazily-built assistant service see the same configuration.
    """
    if argv is None:
        argv = sys.argv[1:]

    args = _build_parser(settings).parse_args(argv)
    _apply_overrides(args, settings)
    _init_logging(settings.LOG_LEVEL)
    _ensure_data_dir(settings)

    logger.info(
        "Starting opsbridge [%s mode, planner=%s, gateway=%s]",
        args.mode,
        settings.PLANNER,
        settings.GATEWAY_URL or "local",
    )

    if args.mode == "api":
        run_api(host=args.host, port=settings.API_PORT, reload=settings.DEBUG)
        return

    # Reload does not work from a background thread
    api_thread = threading.Thread(
        target=run_api,
        kwargs={"host": args.host, "port": settings.API_PORT, "reload": False, "log_level": "warning"},
        daemon=True,
    )
    api_thread.start()

    from opsbridge.client.cli import (  # pylint: disable=import-outside-toplevel
        run_cli,
    )

    run_cli(actor_id=args.actor)


if __name__ == "__main__":
    main()
