"""
Ingestion tokens - compact signed credentials for SDK event writes.

Format: base64url(payload_json).base64url(hmac_sha256(payload_segment, workspace_key))
An optional third segment is tolerated and ignored.

Payload claims:
    wid     workspace id the caller may write into
    exp     expiry, Unix seconds (must be strictly in the future)
    origin  optional browser origin the token was minted for

The origin claim is soft by default: a mismatch is logged, not rejected,
because non-browser SDKs and proxies routinely omit or rewrite Origin.
Set TOKEN_ORIGIN_POLICY=enforce to reject mismatches.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.errors import (
    ConfigurationError,
    InvalidSignatureError,
    MalformedTokenError,
    OriginMismatchError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

ORIGIN_POLICY_WARN = "warn"
ORIGIN_POLICY_ENFORCE = "enforce"

KeyLookup = Callable[[str], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class IngestionClaims:
    workspace_id: str
    expires_at: int
    origin: Optional[str] = None


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def compute_token_signature(payload_segment: str, signing_key: str) -> bytes:
    """HMAC-SHA256 over the encoded payload segment (not the decoded JSON)."""
    return hmac.new(
        signing_key.encode("utf-8"),
        payload_segment.encode("ascii"),
        hashlib.sha256,
    ).digest()


def issue_ingestion_token(
    workspace_id: str,
    signing_key: str,
    ttl_seconds: int = 3600,
    origin: Optional[str] = None,
    now: Optional[float] = None,
) -> str:
    """Mint a token in the format verify_ingestion_token accepts."""
    issued = int(now if now is not None else time.time())
    claims = {"wid": workspace_id, "exp": issued + ttl_seconds}
    if origin:
        claims["origin"] = origin
    payload_segment = b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    signature = compute_token_signature(payload_segment, signing_key)
    return f"{payload_segment}.{b64url_encode(signature)}"


def _split_token(token: str) -> tuple[str, str]:
    parts = (token or "").split(".")
    if len(parts) not in (2, 3):
        raise MalformedTokenError("Invalid token format.")
    payload_segment, signature_segment = parts[0], parts[1]
    if not payload_segment or not signature_segment:
        raise MalformedTokenError("Invalid token format.")
    return payload_segment, signature_segment


def decode_claims(payload_segment: str) -> IngestionClaims:
    try:
        payload = json.loads(b64url_decode(payload_segment))
    except (binascii.Error, ValueError):
        raise MalformedTokenError("Invalid token payload.")

    if not isinstance(payload, dict):
        raise MalformedTokenError("Invalid token payload.")

    workspace_id = payload.get("wid")
    expires_at = payload.get("exp")
    if not workspace_id or not isinstance(workspace_id, str):
        raise MalformedTokenError("Invalid token payload.")
    if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)) or not math.isfinite(expires_at):
        raise MalformedTokenError("Invalid token payload.")

    origin = payload.get("origin")
    return IngestionClaims(
        workspace_id=workspace_id,
        expires_at=int(expires_at),
        origin=origin if isinstance(origin, str) else None,
    )


async def verify_ingestion_token(
    token: str,
    key_lookup: KeyLookup,
    request_origin: Optional[str] = None,
    origin_policy: str = ORIGIN_POLICY_WARN,
    now: Optional[float] = None,
) -> IngestionClaims:
    """
    Verify a token and return its claims.

    Raises MalformedTokenError, TokenExpiredError, OriginMismatchError,
    InvalidSignatureError, or ConfigurationError when the workspace has no key.
    """
    payload_segment, signature_segment = _split_token(token)
    claims = decode_claims(payload_segment)

    current = now if now is not None else time.time()
    if claims.expires_at <= current:
        raise TokenExpiredError("Token has expired.")

    if request_origin and claims.origin and claims.origin != request_origin:
        if origin_policy == ORIGIN_POLICY_ENFORCE:
            raise OriginMismatchError("Invalid token origin.")
        logger.warning(
            "Origin mismatch: token=%s request=%s",
            claims.origin, request_origin,
            extra={"workspace_id": claims.workspace_id},
        )

    signing_key = await key_lookup(claims.workspace_id)
    if not signing_key:
        logger.error(
            "Workspace signing key missing for wid=%s",
            claims.workspace_id,
            extra={"workspace_id": claims.workspace_id, "error_code": "configuration_error"},
        )
        raise ConfigurationError("Workspace configuration error.")

    try:
        provided = b64url_decode(signature_segment)
    except (binascii.Error, ValueError):
        raise InvalidSignatureError("Invalid token signature.")

    expected = compute_token_signature(payload_segment, signing_key)
    if not hmac.compare_digest(expected, provided):
        raise InvalidSignatureError("Invalid token signature.")

    return claims


def workspace_key_lookup(db: AsyncSession) -> KeyLookup:
    """Key lookup backed by the workspace_secrets table."""
    from eventrelay.models.workspace_secret import WorkspaceSecret
    from eventrelay.utils.encryption import decrypt_secret

    async def _lookup(workspace_id: str) -> Optional[str]:
        result = await db.execute(
            select(WorkspaceSecret).where(WorkspaceSecret.workspace_id == workspace_id).limit(1)
        )
        secret = result.scalar_one_or_none()
        if secret is None or not secret.sdk_signing_key:
            return None
        return decrypt_secret(secret.sdk_signing_key)

    return _lookup
