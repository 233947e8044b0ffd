"""Command-line entry point for the drop-folder scanner."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional, TextIO

from .config import ConfigError, load_config
from .scanner import ClamdScanner
from .service import DropFolderService

logger = logging.getLogger("dropscan")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan files dropped into a folder with clamd and sort them by verdict")
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to the YAML configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--environment",
        default=None,
        help="Environment overlay to apply, e.g. 'production' loads config.production.yaml "
        "(default: $DROPSCAN_ENVIRONMENT)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser.parse_args(argv)


def watch_console(service: DropFolderService, stream: TextIO) -> None:
    """Stop ``service`` when a line reading ``q`` arrives on ``stream``."""

    for line in stream:
        if line.strip().lower() == "q":
            logger.info("Quit requested from console")
            service.stop()
            return


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    config_path = Path(args.config)
    try:
        app_config = load_config(config_path, environment=args.environment)
    except ConfigError as exc:
        logging.error("%s", exc)
        raise SystemExit(2) from exc

    scanner = ClamdScanner(
        app_config.scanner.url,
        app_config.scanner.port,
        timeout=app_config.scanner.timeout,
    )
    if not scanner.ping():
        logger.warning(
            "clamd at %s:%s is not answering; scans will report errors until it is reachable",
            app_config.scanner.url,
            app_config.scanner.port,
        )

    service = DropFolderService(app_config, scanner)

    def _signal_handler(signum, frame):  # noqa: ARG001
        logger.info("Received signal %s, shutting down.", signum)
        service.stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    console = threading.Thread(target=watch_console, args=(service, sys.stdin), name="dropscan-console", daemon=True)
    console.start()
    print("Press 'q' then Enter to quit.")

    try:
        service.run()
    except OSError as exc:
        logger.error("Cannot watch %s: %s", app_config.folders.drop, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
