"""Authentication of inbound provider callbacks.

Two schemes are accepted when a webhook secret is configured:
- ``X-Webhook-Signature``: hex HMAC-SHA256 of the raw body keyed with the secret
- ``X-Webhook-Secret``: the shared secret itself, for providers that cannot sign
"""

import hashlib
import hmac
from typing import Optional


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of ``raw_body``."""
    return hmac.new(key=secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()


def validate_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Validate a callback signature using HMAC-SHA256.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON)
        signature: Value of the X-Webhook-Signature header; an optional
            ``sha256=`` prefix is accepted
        secret: Configured webhook secret

    Returns:
        True if the signature matches, False otherwise

    Security:
        Uses hmac.compare_digest() for constant-time comparison.
    """
    if signature.lower().startswith("sha256="):
        signature = signature[len("sha256=") :]
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.lower(), signature.strip().lower())


def authenticate_callback(
    raw_body: bytes,
    secret: str,
    signature: Optional[str] = None,
    shared_secret: Optional[str] = None,
) -> bool:
    """Decide whether a callback request is authentic.

    Args:
        raw_body: Raw request body
        secret: Configured webhook secret (empty disables verification)
        signature: X-Webhook-Signature header value, if any
        shared_secret: X-Webhook-Secret header value, if any

    Returns:
        True when verification is disabled or either scheme matches
    """
    if not secret:
        return True
    if signature and validate_webhook_signature(raw_body, signature, secret):
        return True
    if shared_secret:
        return hmac.compare_digest(shared_secret.encode("utf-8"), secret.encode("utf-8"))
    return False
