"""
This module manages the JWT auth mechanism used by the backend.
Tokens are issued by the account service; this server only signs them for
tooling and tests and verifies them on every request.
"""

import logging
import time
from typing import Optional

import jwt
import jwt.exceptions

from backend.config import config

logger = logging.getLogger(__name__)

# Read the YAML file
the_config = config.get_config()

JWT_SECRET = the_config["security"]["jwt_secret"]
JWT_ALGORITHM = the_config["security"]["jwt_algorithm"]


def sign_jwt(user_id: int) -> str:
    """
    This function signs/encodes a JWT token
    """
    payload = {
        "user_id": user_id,
        "expires": time.time() + int(the_config["security"]["jwt_auth_timeout"]),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> Optional[dict]:
    """
    Decode a JWT token; returns None when it is invalid or has expired.
    """
    try:
        decoded_token = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.exceptions.InvalidTokenError as exc:
        logger.debug("Rejected JWT: %s", exc)
        return None

    # Test to see if the token has expired
    if decoded_token.get("expires", 0) >= time.time():
        return decoded_token
    return None


def get_user_id_from_token(token: str) -> Optional[int]:
    """The positive integer ``user_id`` carried by a valid token, else None."""
    payload = decode_jwt(token) if token else None
    if not payload:
        return None
    try:
        user_id = int(payload.get("user_id"))
    except (TypeError, ValueError):
        return None
    return user_id if user_id > 0 else None
