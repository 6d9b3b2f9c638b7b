"""
Utility functions for the relay service.
"""

import hmac
import hashlib
import logging
import re
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

_PSEUDONYM_RE = re.compile(r"^#?(\d+)")


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature, body length: {len(body)} bytes")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def verify_secret_token(received: Optional[str], secret: str) -> bool:
    """Constant-time comparison of a shared-secret header."""
    if not received:
        return False
    return hmac.compare_digest(received.encode("utf-8"), secret.encode("utf-8"))


def parse_pseudonym(text: str) -> Optional[int]:
    """
    Parse a leading pseudonym reference such as "#12" or "12".

    Returns:
        The pseudonym id, or None when the text does not start with one
    """
    match = _PSEUDONYM_RE.match(text.strip())
    return int(match.group(1)) if match else None


def format_timestamp(value: Optional[datetime]) -> str:
    """Render a stored UTC timestamp for operator-facing text."""
    if value is None:
        return "Unknown"
    return value.strftime("%Y-%m-%d %H:%M UTC")
