"""
Validation of installation requests before anything touches the target.

Checks are pure apart from one catalog lookup; every violation is collected
into a list of human readable messages rather than raised.
"""

import base64
import binascii
import ipaddress
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from backend.persistence.models import AuthType
from backend.utils.verbosity_logger import get_logger

logger = get_logger("backend.services.install_validator")

# ASCII digits only, no leading zeros
IPV4_OCTET = r"(?:0|[1-9][0-9]{0,2})"
IPV4_RE = re.compile(rf"^{IPV4_OCTET}\.{IPV4_OCTET}\.{IPV4_OCTET}\.{IPV4_OCTET}$")
PEM_BEGIN_RE = re.compile(r"^-----BEGIN ([A-Z0-9 ]+)-----$")
PEM_END_RE = re.compile(r"^-----END ([A-Z0-9 ]+)-----$")
# "Proc-Type: 4,ENCRYPTED", "DEK-Info: ..." and friends
PEM_HEADER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]*:")
BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")

SUPPORTED_KEY_TYPES = (
    "OPENSSH PRIVATE KEY",
    "RSA PRIVATE KEY",
    "DSA PRIVATE KEY",
    "EC PRIVATE KEY",
    "PRIVATE KEY",
    "ED25519 PRIVATE KEY",
)

# Plausible base64 body length per key type: (min, max); None means unbounded
KEY_LENGTH_BANDS = {
    "ED25519 PRIVATE KEY": (80, 300),
    "RSA PRIVATE KEY": (1000, None),
    "OPENSSH PRIVATE KEY": (100, None),
    "EC PRIVATE KEY": (100, 1000),
}


@dataclass
class InstallRequest:
    """Everything a user submits to start one installation."""

    user_id: int
    ip: str
    ssh_port: int = 22
    auth_type: str = AuthType.PASSWORD
    password: str = ""
    ssh_key: str = ""
    windows_version: str = ""
    rdp_password: str = ""

    def credential(self) -> str:
        if self.auth_type == AuthType.SSH_KEY:
            return self.ssh_key
        return self.password


@dataclass
class ValidationResult:
    """Result of request validation."""

    errors: List[str] = field(default_factory=list)
    key_type: Optional[str] = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def message(self) -> str:
        return "; ".join(self.errors)


def parse_ipv4(ip) -> Optional[ipaddress.IPv4Address]:
    """The address for strict dotted-quad syntax with octets in 0-255, else None."""
    if not isinstance(ip, str) or not IPV4_RE.match(ip.strip()):
        return None
    try:
        return ipaddress.IPv4Address(ip.strip())
    except ValueError:
        return None


def is_valid_ipv4(ip) -> bool:
    return parse_ipv4(ip) is not None


def is_loopback(ip: str) -> bool:
    address = parse_ipv4(ip)
    return address is not None and address.is_loopback


def validate_ssh_key(ssh_key: str) -> Tuple[List[str], Optional[str]]:
    """
    Structural check of a PEM framed private key.

    Returns:
        Tuple of (list_of_errors, detected_key_type)
    """
    if not ssh_key or not ssh_key.strip():
        return ["SSH private key cannot be empty"], None

    lines = [line.strip() for line in ssh_key.strip().splitlines()]
    if len(lines) < 3:
        return [
            f"SSH key appears to be incomplete - found {len(lines)} lines, "
            "minimum 3 required"
        ], None

    begin = PEM_BEGIN_RE.match(lines[0])
    end = PEM_END_RE.match(lines[-1])
    if not begin or not end:
        return ["SSH key must be in PEM format with -----BEGIN and -----END markers"], None

    key_type = begin.group(1)
    if key_type != end.group(1):
        return [
            "SSH key begin and end markers do not match: "
            f"BEGIN({key_type}) vs END({end.group(1)})"
        ], None

    if key_type not in SUPPORTED_KEY_TYPES:
        return [
            f"Unsupported SSH key type. Found: {key_type}. Supported types: "
            "OpenSSH, RSA, DSA, EC, ED25519, and PKCS#8 private keys"
        ], None

    body = "".join(
        line
        for line in lines[1:-1]
        if line and not PEM_HEADER_RE.match(line) and ": " not in line
    )
    body = re.sub(r"\s", "", body)
    if not body:
        return ["SSH key contains no valid base64 content"], key_type
    if not BASE64_RE.match(body):
        return ["SSH key contains invalid base64 content"], key_type

    try:
        decoded = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        return ["SSH key contains invalid base64 encoding"], key_type
    if not decoded:
        return ["SSH key base64 content is empty after decoding"], key_type

    band = KEY_LENGTH_BANDS.get(key_type)
    if band:
        low, high = band
        if len(body) < low or (high is not None and len(body) > high):
            expected = f"{low}-{high}" if high is not None else f"at least {low}"
            return [
                f"{key_type.title()} length appears invalid: {len(body)} "
                f"characters (expected {expected})"
            ], key_type

    return [], key_type


class InstallValidator:
    """Validates an ``InstallRequest`` against syntax rules and the image catalog."""

    def __init__(self, catalog, rdp_password_min_length: int = 4):
        self.catalog = catalog
        self.rdp_password_min_length = rdp_password_min_length

    def validate(self, request: InstallRequest) -> ValidationResult:
        result = ValidationResult()
        errors = result.errors

        if (
            not isinstance(request.user_id, int)
            or isinstance(request.user_id, bool)
            or request.user_id <= 0
        ):
            errors.append("Invalid user ID")

        address = parse_ipv4(request.ip)
        if address is None:
            errors.append("Invalid IPv4 address format")
        elif address.is_loopback:
            errors.append("Loopback addresses cannot be provisioned")

        if (
            not isinstance(request.ssh_port, int)
            or isinstance(request.ssh_port, bool)
            or not 1 <= request.ssh_port <= 65535
        ):
            errors.append("SSH port must be between 1 and 65535")

        slug = (request.windows_version or "").strip()
        if not slug:
            errors.append("Windows version is required")
        elif not self.catalog.lookup(slug):
            errors.append("Invalid Windows version selected")

        rdp_password = request.rdp_password or ""
        if not rdp_password.strip():
            errors.append("RDP password is required")
        elif rdp_password.startswith("#"):
            errors.append('RDP password cannot start with "#" character')
        elif len(rdp_password) < self.rdp_password_min_length:
            errors.append(
                "RDP password must be at least "
                f"{self.rdp_password_min_length} characters long"
            )

        if request.auth_type == AuthType.PASSWORD:
            if not request.password or not request.password.strip():
                errors.append(
                    "VPS password is required when using password authentication"
                )
        elif request.auth_type == AuthType.SSH_KEY:
            if not request.ssh_key or not request.ssh_key.strip():
                errors.append(
                    "SSH private key is required when using SSH key authentication"
                )
            else:
                key_errors, key_type = validate_ssh_key(request.ssh_key)
                errors.extend(key_errors)
                result.key_type = key_type
                if not key_errors:
                    logger.debug("SSH key validation passed: type=%s", key_type)
        else:
            errors.append("Authentication type must be 'password' or 'ssh_key'")

        return result
