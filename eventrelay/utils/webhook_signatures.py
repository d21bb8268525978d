"""
Outbound webhook signing.

The signature is HMAC-SHA256 over the exact request body bytes, sent as
X-Signature: sha256=<hex>. serialize_payload() is the single encoder: the
delivery worker signs and sends the same bytes, and receivers verify
against the raw body they received.
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def serialize_payload(payload: Any) -> bytes:
    """Canonical compact JSON encoding (sorted keys, UTF-8)."""
    return json.dumps(
        payload,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def sign_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def sign_webhook_payload(payload: Any, secret: str) -> str:
    """Sign a payload with an endpoint secret. Pure and deterministic."""
    return sign_body(serialize_payload(payload), secret)


def verify_webhook_signature(
    body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    header_prefix: str = SIGNATURE_PREFIX,
) -> bool:
    """
    Receiver-side check of an X-Signature header against the raw body.
    Accepts the signature with or without the "sha256=" prefix.
    """
    if not secret or not signature:
        return False

    sig = signature
    if header_prefix and sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, sig.lower())
