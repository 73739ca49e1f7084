"""
Log formatter that renders every record's timestamp in UTC.
"""

import logging
from datetime import datetime, timezone


class UTCTimestampFormatter(logging.Formatter):
    """Formatter that prefixes records with an ISO-8601 UTC timestamp."""

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if datefmt:
            return stamp.strftime(datefmt)
        return stamp.isoformat(timespec="milliseconds")

    def format(self, record):
        formatted = super().format(record)
        if "%(asctime)" in (self._fmt or ""):
            return formatted
        return f"{self.formatTime(record, self.datefmt)} - {formatted}"
