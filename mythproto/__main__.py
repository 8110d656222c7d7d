"""
mythproto - Entry Point

Run with: python -m mythproto [probe|monitor]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from mythproto import __version__
from mythproto.backend import Backend
from mythproto.config import load_config
from mythproto.core.events import ClientErrorEvent, Event

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="mythproto",
        description="mythproto - MythTV backend protocol client",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging, including frame traffic",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Backend host (default: from config, else localhost)",
    )

    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=None,
        help="Backend port (default: from config, else 6543)",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="TOML file with a [backend] table",
    )

    parser.add_argument(
        "--protocol-version",
        type=int,
        default=None,
        help="Protocol version to offer first (default: newest known)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "command",
        choices=["probe", "monitor"],
        nargs="?",
        default="probe",
        help="probe: negotiate and report the protocol version; "
        "monitor: log backend events until interrupted",
    )

    return parser.parse_args(argv)


async def probe(backend: Backend) -> None:
    """Negotiate a version and print it."""
    async with backend:
        version = backend.version
        release = f" (MythTV {version.release})" if version.release else ""
        print(f"{backend.connection.host}:{backend.connection.port} speaks protocol version {version}{release}")


async def monitor(backend: Backend) -> None:
    """Log backend events until the connection fails or the user interrupts."""
    stopped = asyncio.Event()

    def on_event(event: Event) -> None:
        if isinstance(event, ClientErrorEvent):
            logger.error("Connection lost: %s: %s", event.error_type, event.message)
            stopped.set()
        else:
            logger.info("Event %s %s", event.name, " ".join(getattr(event, "arguments", [])))

    async with backend:
        backend.add_event_listener(on_event)
        if not await backend.announce_monitor("NORMAL"):
            raise RuntimeError("Backend refused the monitor announcement")
        await backend.enable_events()
        logger.info("Listening for events on protocol version %s", backend.version)
        await stopped.wait()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    config = load_config(args.config)
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.protocol_version is not None:
        config.protocol_version = args.protocol_version
    if args.command == "monitor":
        # Events may be minutes apart.
        config.read_budget = None
        config.read_timeout = None

    backend = Backend.from_config(config)
    command = probe if args.command == "probe" else monitor

    try:
        asyncio.run(command(backend))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
