"""
Logging configuration for the RDPForge server.

Console output is always enabled; a file handler is added under
RDPFORGE_LOG_DIR (or ./logs) when the directory is writable.
"""

import logging
import os
import sys

from backend.config.config import get_log_file, get_log_format
from backend.utils.logging_formatter import UTCTimestampFormatter
from backend.utils.verbosity_logger import get_logger

logger = get_logger("backend.startup.logging")


def _resolve_log_file():
    configured = get_log_file()
    if configured:
        return configured
    logs_dir = os.environ.get("RDPFORGE_LOG_DIR") or "logs"
    return os.path.join(logs_dir, "backend.log")


def configure_logging():
    """Configure root logging with UTC timestamps and console/file handlers."""
    handlers = [logging.StreamHandler()]

    log_file = _resolve_log_file()
    try:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    except PermissionError as e:
        logger.error("Permission denied for log file %s: %s", log_file, e)
        print(
            f"WARNING: Cannot write to {log_file} due to permissions. "
            "Logging to console only.",
            file=sys.stderr,
        )
    except OSError as e:
        logger.error("Failed to create file handler for %s: %s", log_file, e)

    logging.basicConfig(level=logging.INFO, handlers=handlers, force=True)

    utc_formatter = UTCTimestampFormatter(get_log_format())
    for handler in logging.root.handlers:
        handler.setFormatter(utc_formatter)

    # paramiko is chatty at INFO for every transport negotiation
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logger.info("Logging configured with %d handlers", len(handlers))
