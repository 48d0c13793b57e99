#!/usr/bin/env python3
"""
termrelay - Relay server

Opens SSH sessions on behalf of clients and streams them over WebSocket.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from server.config import ServerConfig
from server.http_server import run_http_server
from shared.logging_config import get_default_log_file, setup_logging


def main():
    """Entry point for termrelay-server."""
    parser = argparse.ArgumentParser(description="termrelay SSH-to-WebSocket relay")
    parser.add_argument("-c", "--config", type=Path, help="Path to YAML config file")
    parser.add_argument("--host", help="Listen address (default: 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, help="Listen port (default: 7879)")
    parser.add_argument(
        "--api-key",
        default=None,
        help="Bearer token for the control endpoint (or set TERMRELAY_API_KEY)",
    )
    parser.add_argument(
        "--idle-timeout", type=float, help="Seconds before a session is closed (default: 600)"
    )
    parser.add_argument(
        "--renew-idle",
        action="store_true",
        help="Restart the idle timeout on terminal activity",
    )
    parser.add_argument("--log-file", help="Log file path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    config = ServerConfig.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.api_key:
        config.api_key = args.api_key
    if args.idle_timeout is not None:
        config.idle_timeout = args.idle_timeout
    if args.renew_idle:
        config.renew_idle_on_activity = True
    if args.log_file:
        config.log_file = args.log_file
    if args.verbose:
        config.log_level = "DEBUG"

    logger = setup_logging(
        level=config.log_level,
        log_file=config.log_file or get_default_log_file("server"),
        stream=sys.stderr,
    )

    try:
        asyncio.run(run_http_server(config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
