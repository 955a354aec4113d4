"""
GitHub-style webhook signature validation.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Optional

SIGNATURE_HEADER = "X-Hub-Signature-256"


def sign(payload_body: bytes, secret: str) -> str:
    """The header value a sender computes for `payload_body`."""
    digest = hmac.new(secret.encode("utf-8"), payload_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(
    payload_body: bytes,
    signature_header: Optional[str],
    secret: str,
) -> bool:
    """
    Verify a webhook signature using HMAC SHA-256.

    Args:
        payload_body: Raw request body bytes
        signature_header: X-Hub-Signature-256 header value (format: sha256=<hash>)
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    # constant-time comparison
    return hmac.compare_digest(sign(payload_body, secret), signature_header)
