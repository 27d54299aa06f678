"""HMAC-SHA256 payload signing for outgoing webhooks.

Receivers verify a delivery by recomputing the HMAC of the raw request body
with their shared secret and comparing it to the ``X-Webhook-Signature``
header (``sha256=<hex digest>``, the same format GitHub uses).
"""

import hashlib
import hmac
import secrets

SIGNATURE_PREFIX = "sha256="
SECRET_PREFIX = "whsec_"


def _as_bytes(value) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return value.encode("utf-8")


def sign_payload(payload: bytes | str, secret: str) -> str:
    """Return ``sha256=<hex>`` for ``payload`` keyed with ``secret``."""
    digest = hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes | str, secret: str, signature: str) -> bool:
    """Constant-time check of ``signature`` against ``payload``. Never raises."""
    try:
        expected = _as_bytes(sign_payload(payload, secret))
        received = _as_bytes(signature)
    except (AttributeError, TypeError, UnicodeError):
        return False
    if len(expected) != len(received):
        return False
    return hmac.compare_digest(expected, received)


def generate_secret() -> str:
    """New signing secret: ``whsec_`` + 32 random bytes, hex encoded."""
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"
