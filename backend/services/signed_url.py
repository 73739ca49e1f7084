"""
Time-limited download tokens bound to the requesting client.

A token signs ``ip:filename:timestamp:install_id`` with HMAC-SHA256 and is
carried in the query string as ``sig=<timestamp>.<install_id>.<hexdigest>``.
"""

import hashlib
import hmac
import re
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

# Tolerated clock drift for tokens stamped slightly in the future
FUTURE_SKEW_SECONDS = 30

# <timestamp>.<install_id>.<hex sha256>, ASCII only
TOKEN_RE = re.compile(r"^([0-9]{1,12})\.([0-9]{1,12})\.([0-9a-f]{64})\Z")


@dataclass
class VerifiedToken:
    """A token that passed verification."""

    install_id: int
    timestamp: int


class SignedUrlIssuer:
    """Creates and verifies download signatures with a server-held secret."""

    def __init__(
        self,
        secret: str,
        public_url: str,
        decoy_segment: str,
        ttl_seconds: int = 360,
        clock=time.time,
    ):
        if not secret:
            raise ValueError("A download signing secret must be configured")
        self.secret = secret.encode("utf-8")
        self.public_url = public_url.rstrip("/")
        self.decoy_segment = decoy_segment
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def sign(self, ip: str, filename: str, timestamp: int, install_id: int) -> str:
        message = f"{ip}:{filename}:{timestamp}:{install_id}".encode("utf-8")
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def create_token(
        self, ip: str, filename: str, install_id: int, timestamp: Optional[int] = None
    ) -> str:
        if timestamp is None:
            timestamp = int(self.clock())
        signature = self.sign(ip, filename, timestamp, install_id)
        return f"{timestamp}.{install_id}.{signature}"

    def create_url(
        self,
        ip: str,
        filename: str,
        install_id: int,
        region: str,
        timestamp: Optional[int] = None,
    ) -> str:
        token = self.create_token(ip, filename, install_id, timestamp)
        return (
            f"{self.public_url}/download/{quote(region)}/{self.decoy_segment}/"
            f"{quote(filename)}?sig={token}"
        )

    def verify(self, ip: str, filename: str, token: str) -> Optional[VerifiedToken]:
        """
        Check a ``sig`` value against the requesting IP and filename.

        Returns the decoded token, or None when it is malformed, stale,
        from the future or signed over different fields.
        """
        if not token:
            return None
        match = TOKEN_RE.match(token)
        if not match:
            return None
        timestamp = int(match.group(1))
        install_id = int(match.group(2))
        signature = match.group(3)

        age = int(self.clock()) - timestamp
        if age > self.ttl_seconds or age < -FUTURE_SKEW_SECONDS:
            return None

        expected = self.sign(ip, filename, timestamp, install_id)
        if not hmac.compare_digest(expected, signature):
            return None
        return VerifiedToken(install_id=install_id, timestamp=timestamp)
