"""
Flexible logging utility for RDPForge.

Levels are enabled through a pipe-separated list in the ``logging.level``
setting, e.g. ``"INFO|ERROR"``. Values coming from remote targets or HTTP
clients (IP strings, user agents, script messages) go through
``sanitize_log`` before they are written.
"""

import logging
import re
from typing import Set

from backend.config.config import get_log_format, get_log_levels
from backend.utils.logging_formatter import UTCTimestampFormatter

# Matches control characters that can cause log injection (CWE-117)
_CONTROL_CHAR_RE = re.compile(r"[\r\n]")

_DEFAULT_LEVELS = {logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL}


def sanitize_log(value) -> str:
    """Sanitize a value for safe logging by removing newline characters (CWE-117)."""
    return _CONTROL_CHAR_RE.sub("", str(value))


def parse_levels(level_config: str) -> Set[int]:
    """Turn ``"INFO|ERROR"`` into ``{logging.INFO, logging.ERROR}``."""
    enabled = set()
    for level_name in level_config.split("|"):
        level = logging.getLevelName(level_name.strip().upper())
        if isinstance(level, int):
            enabled.add(level)
    return enabled or set(_DEFAULT_LEVELS)


class FlexibleLogger:
    """
    Logger that only emits the levels listed in the configuration.

    - "DEBUG" - Only debug messages
    - "WARNING|ERROR|CRITICAL" - Problems only
    - "INFO|WARNING|ERROR|CRITICAL" - Standard operational logging
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.name = name

        try:
            self.enabled_levels = parse_levels(get_log_levels())
        except (KeyError, AttributeError, ValueError):
            self.enabled_levels = set(_DEFAULT_LEVELS)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(UTCTimestampFormatter(get_log_format()))
            self.logger.addHandler(handler)
            # Filtering happens in _log, not in the stdlib level check
            self.logger.setLevel(logging.DEBUG)

    def is_enabled(self, level: int) -> bool:
        return level in self.enabled_levels

    def _log(self, level: int, msg: str, *args, **kwargs):
        if self.is_enabled(level):
            self.logger.log(level, msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._log(logging.CRITICAL, msg, *args, **kwargs)


def get_logger(name: str) -> FlexibleLogger:
    """Get a flexible logger instance with granular level control."""
    return FlexibleLogger(name)
