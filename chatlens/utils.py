"""
Utility functions for chatlens.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# %Y is only four digits wide in this range
MIN_YEAR = 1000
MAX_YEAR = 9999


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """
    Format a datetime as an ISO-8601 UTC string with Z suffix.

    Naive datetimes are treated as UTC. The fixed format keeps lexical
    order equal to chronological order in both stores.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_iso_ts(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Only years MIN_YEAR..MAX_YEAR (after conversion to UTC) are accepted,
    so that every stored timestamp formats to the same fixed width.

    Raises:
        ValueError: if the value is not ISO-8601 or falls outside that range
    """
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        parsed = parsed.astimezone(timezone.utc)
    except OverflowError as e:
        raise ValueError(f"timestamp out of range: {value!r}") from e

    if not MIN_YEAR <= parsed.year <= MAX_YEAR:
        raise ValueError(f"timestamp year must be between {MIN_YEAR} and {MAX_YEAR}")
    return parsed


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify a Messenger-style HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: X-Hub-Signature-256 header value ("sha256=<hex>")
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        logger.info("HMAC signature verification: missing")
        return False

    provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
    logger.debug(f"Body length: {len(body)} bytes, signature: {provided[:8]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, provided)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
