"""
Utility functions for the consent API.
"""

import hmac
import logging
import secrets
import string

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_letters + string.digits


def generate_id(length: int = 12) -> str:
    """
    Issue an opaque alphanumeric identifier.

    Args:
        length: Number of characters in the identifier

    Returns:
        Random string drawn from [A-Za-z0-9]. Uniqueness is enforced by the
        store's key constraints, not here.
    """
    if length < 1:
        raise ValueError("Length must be at least 1")

    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def verify_api_key(provided: str | None, expected: str) -> bool:
    """
    Compare the X-API-Key header with the configured shared secret.

    Args:
        provided: Header value, None when the header is missing
        expected: API_KEY setting

    Returns:
        True if the key matches, False otherwise
    """
    if not provided or not expected:
        logger.debug("API key missing or not configured")
        return False

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
