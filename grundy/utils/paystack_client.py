from __future__ import annotations

import hashlib
import hmac


def compute_signature(raw: bytes, secret: str) -> str:
    return hmac.new((secret or "").encode("utf-8"), raw or b"", hashlib.sha512).hexdigest()


def verify_signature(raw: bytes, signature: str | None, secret: str) -> bool:
    """Paystack signs the raw request body with HMAC-SHA512 of the secret key."""
    if not signature or not secret:
        return False
    expected = compute_signature(raw, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
