"""
Utility functions shared by the webhook, OAuth and send paths.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_meta_signature(body: Optional[bytes], signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify the X-Hub-Signature-256 header of a webhook delivery.

    Args:
        body: Raw request body bytes, exactly as received
        signature: Header value, formatted as "sha256=<hex>"
        secret: Meta app secret

    Returns:
        True if signature is valid, False otherwise.
        An empty secret means signature checks are disabled and always
        returns True (see Settings.META_APP_SECRET).
    """
    if not secret:
        logger.debug("Signature checks disabled, accepting payload")
        return True

    if not signature or not body:
        logger.info("HMAC signature verification: missing header or body")
        return False

    expected_signature = SIGNATURE_PREFIX + hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(
        expected_signature.encode("utf-8"),
        signature.strip().encode("utf-8"),
    )
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def clean_access_token(token: Any) -> Optional[str]:
    """Trim a pasted token and keep only its first whitespace-delimited part."""
    if token is None:
        return None
    parts = str(token).strip().split()
    return parts[0] if parts else None


def datetime_from_unix_seconds(value: Any) -> datetime:
    """Convert an epoch-seconds value to an aware UTC datetime, defaulting to now."""
    now = datetime.now(timezone.utc)
    if value is None or value == "":
        return now
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return now


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
