"""Webhook signature verification — constant-time HMAC-SHA256.

Security contract:
- The digest is computed over the raw request bytes, never re-encoded JSON
- All comparisons use hmac.compare_digest() (constant-time)
- Missing secret or missing signature -> no verification is attempted
- Signature present, secret bound, digest mismatch -> batch rejected
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from enum import Enum

from hookrelay.webhooks.secret_store import SecretStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hook-signature"


class VerificationOutcome(str, Enum):
    """Result of checking a batch's signature."""
    VERIFIED = "verified"
    UNVERIFIED_ACCEPTED = "unverified_accepted"
    REJECTED = "rejected"

    @property
    def accepted(self) -> bool:
        return self is not VerificationOutcome.REJECTED


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Lowercase hex HMAC-SHA256 of ``raw_body`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """Verify an X-Hook-Signature value against the raw body.

    Args:
        raw_body: Exact request body bytes as received
        signature: Value of the X-Hook-Signature header
        secret: Current shared secret

    Returns:
        True only if both secret and signature are present and match
    """
    if not secret or not signature:
        return False
    # Compare as bytes: compare_digest rejects non-ASCII str
    expected = compute_signature(raw_body, secret).encode("ascii")
    return hmac.compare_digest(expected, signature.encode("utf-8"))


def check_batch(raw_body: bytes, signature: str | None, store: SecretStore) -> VerificationOutcome:
    """Decide whether an event batch is verified, accepted unverified, or rejected.

    The secret is read here, at check time, so a handshake that lands while
    the body was being read is honoured.
    """
    if not signature:
        return VerificationOutcome.UNVERIFIED_ACCEPTED

    secret = store.get()
    if secret is None:
        logger.warning("Signed batch received before any handshake; accepting unverified")
        return VerificationOutcome.UNVERIFIED_ACCEPTED

    if verify_signature(raw_body, signature, secret):
        return VerificationOutcome.VERIFIED
    return VerificationOutcome.REJECTED
