"""Webhook signature computation and verification."""

import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger("webhooks")

SIGNATURE_HEADER = "X-Signature"


def compute_signature(signing_key: str, raw_body: bytes) -> str:
    """Base64-encoded HMAC-SHA256 of the raw body."""
    digest = hmac.new(signing_key.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(signing_key: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """
    Check a delivery's signature header against the raw body.

    The comparison runs in constant time. A missing key, body or header never
    verifies.
    """
    if not signing_key:
        logger.error("Webhook signature key is not configured")
        return False
    if not signature or raw_body is None:
        return False
    expected = compute_signature(signing_key, raw_body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
