"""
Utility functions shared by the service and the reconciliation engine.
"""

import hmac
import hashlib
import logging
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"
SIGNATURE_PREFIX = "sha256="


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex digest from the X-Signature header, bare or in the
            provider's "sha256=<hex>" form
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    is_valid = hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))
    logger.debug(f"HMAC signature over {len(body)} bytes: {'valid' if is_valid else 'invalid'}")

    return is_valid


def new_local_id() -> str:
    """Temporary id for an optimistic entry, never reused."""
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
