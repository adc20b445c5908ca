"""Stripe Webhook Signature Verification.

Verifies that incoming webhooks are genuinely from Stripe using HMAC-SHA256.
The ``Stripe-Signature`` header carries ``t=<unix ts>`` and one or more
``v1=<hex digest>`` entries; the digest covers ``"{t}.{raw body}"``.
"""

import hashlib
import hmac
import time
from typing import List, Optional, Tuple

from order_lifecycle.config.constants import STRIPE_SIGNATURE_TOLERANCE
from order_lifecycle.core.logger import setup_logger

logger = setup_logger(__name__)


def _parse_signature_header(signature_header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, payload: str) -> str:
    """HMAC-SHA256 hex digest Stripe sends in the ``v1`` entry."""
    signed_payload = f"{timestamp}.{payload}"
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_stripe_signature(
    request_body: str,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = STRIPE_SIGNATURE_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Stripe webhook signature.

    Args:
        request_body: Raw request body as string (NOT parsed JSON)
        signature_header: Value from the Stripe-Signature header
        secret: Endpoint signing secret (whsec_...)
        tolerance: Maximum accepted age of the signed timestamp, in seconds
        now: Current unix time, for tests

    Returns:
        True if one of the v1 signatures matches and the timestamp is fresh
    """
    if not signature_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return False

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        logger.warning("Malformed Stripe-Signature header")
        return False

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        logger.warning(f"Stripe signature timestamp outside tolerance ({int(current - timestamp)}s)")
        return False

    expected = compute_signature(secret, timestamp, request_body)
    for candidate in signatures:
        # Constant-time comparison
        if hmac.compare_digest(expected, candidate):
            return True

    logger.warning(f"Invalid Stripe webhook signature. Got: {signatures[0][:16]}...")
    return False


def validate_webhook_request(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
) -> Tuple[bool, Optional[str]]:
    """
    Full webhook validation: signature verification + basic checks.

    Returns:
        Tuple of (is_valid: bool, error_message: Optional[str])
    """
    try:
        body_str = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        error = f"Invalid UTF-8 in request body: {e}"
        logger.error(error)
        return False, error

    if not body_str.strip():
        return False, "Empty request body"

    if not secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured, accepting unverified event")
        return True, None

    if not verify_stripe_signature(body_str, signature_header, secret):
        return False, "Invalid webhook signature"

    return True, None
