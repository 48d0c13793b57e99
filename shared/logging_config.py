"""Logging setup shared by the relay server and the terminal client."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

# Modules log under "termrelay.<component>"
ROOT_LOGGER = "termrelay"

SERVER_LOG_DIR = Path("/var/log/termrelay")
USER_LOG_DIR = Path.home() / ".termrelay" / "logs"


def _rotating_handler(log_file: str | Path, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")


def setup_logging(
    name: str = ROOT_LOGGER,
    level: str = "INFO",
    log_file: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    stream: TextIO | None = None,
    log_format: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
) -> logging.Logger:
    """
    Configure a logger tree for console output and, optionally, a rotating file.

    Calling it again for the same name replaces the previous handlers.
    Unknown level names fall back to INFO.

    Args:
        name: Logger to configure; children such as 'termrelay.bridge' inherit it
        level: Level name, case-insensitive
        log_file: Rotating log file path; None logs to the console only
        max_bytes: Rotation threshold per file
        backup_count: Rotated files to keep
        stream: Console stream (stderr when omitted)
        log_format: Record format
        date_format: Timestamp format

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]
    if log_file:
        handlers.append(_rotating_handler(log_file, max_bytes, backup_count))

    formatter = logging.Formatter(log_format, datefmt=date_format)
    logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_default_log_dir(component: str = "client") -> Path:
    """Where a component writes its logs.

    The server uses /var/log/termrelay when it runs as root or that directory
    already exists; everything else logs under ~/.termrelay/logs.
    """
    if component == "server" and (SERVER_LOG_DIR.exists() or os.geteuid() == 0):
        return SERVER_LOG_DIR
    return USER_LOG_DIR


def get_default_log_file(component: str = "client") -> Path:
    name = "server.log" if component == "server" else "client.log"
    return get_default_log_dir(component) / name
