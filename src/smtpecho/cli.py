#!/usr/bin/env python3
"""
Command-line interface for smtp-echo.

Usage:
    smtp-echo [OPTIONS]

Options:
    --config PATH   TOML configuration file
    --debug         Enable debug logging
    --version       Show version and exit
    --help          Show this message and exit
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from smtpecho import __version__
from smtpecho.common.config import LoggingSettings, Settings, get_settings
from smtpecho.common.exceptions import SMTPEchoError
from smtpecho.smtp.receiver import run_echo_server
from smtpecho.smtp.replier import create_replier


def setup_logging(settings: Optional[LoggingSettings] = None, debug: bool = False) -> None:
    """
    Configure logging for the server.

    Args:
        settings: Logging settings; defaults apply when omitted.
        debug: Force debug logging.
    """
    settings = settings or LoggingSettings()
    log_level = logging.DEBUG if debug else getattr(logging, settings.level)

    logging.basicConfig(
        level=log_level,
        format=settings.format,
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
        force=True,
    )

    if not debug:
        logging.getLogger("mail.log").setLevel(logging.WARNING)
        logging.getLogger("aiosmtplib").setLevel(logging.WARNING)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="smtp-echo - echo every received message back to its sender",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    Start with a configuration file:
        smtp-echo --config config.toml

    Start in debug mode:
        smtp-echo --config config.toml --debug

Environment Variables:
    SMTP_ECHO_CONFIG_FILE   Configuration file path
    SMTP_ECHO_DEBUG         Enable debug mode (true/false)
    SMTP_ECHO_<KEY>         Override a setting, e.g. SMTP_ECHO_REPLY__FROM_ADDRESS
        """,
    )

    parser.add_argument(
        "--config",
        default=None,
        help="Path to the TOML configuration file",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Enable debug logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"smtp-echo {__version__}",
    )

    return parser.parse_args(argv)


async def serve(settings: Settings) -> None:
    """Build the reply pipeline and serve until SIGINT or SIGTERM."""
    replier = create_replier(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await run_echo_server(settings, replier, stop_event)


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the smtp-echo server.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    args = parse_args(argv)

    if args.debug:
        debug = True
    else:
        debug = os.getenv("SMTP_ECHO_DEBUG", "").lower() in ("true", "1", "yes")

    setup_logging(debug=debug)
    logger = logging.getLogger(__name__)

    try:
        settings = get_settings(args.config)
    except SMTPEchoError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    setup_logging(settings.logging, debug=debug)
    logger.info("Starting smtp-echo v%s", __version__)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        return 0
    except SMTPEchoError as e:
        logger.error("smtp-echo failed to start: %s", e)
        return 1

    logger.info("smtp-echo stopped")
    return 0
