"""
Encryption for signing secrets at rest (workspace SDK keys, webhook endpoint secrets).
Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Fernet version byte 0x80 base64-encodes to this prefix
FERNET_TOKEN_PREFIX = "gAAAAA"


def _get_fernet():
    """Get a Fernet cipher using the configured encryption key."""
    from cryptography.fernet import Fernet
    from eventrelay.config import get_settings
    settings = get_settings()

    key = settings.encryption_key
    if not key:
        logger.debug("ENCRYPTION_KEY not configured - storing secrets as-is")
        return None

    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_secret(plaintext: str) -> str:
    """
    Encrypt a secret. Returns the Fernet token as a string.
    Falls back to the plaintext if no encryption key is configured.
    """
    if not plaintext:
        return plaintext

    fernet = _get_fernet()
    if fernet is None:
        return plaintext

    try:
        return fernet.encrypt(plaintext.encode()).decode()
    except Exception as e:
        logger.error("Secret encryption failed: %s", str(e))
        return plaintext


def decrypt_secret(stored: str) -> Optional[str]:
    """
    Decrypt a stored secret. Values that are not Fernet tokens (written
    before ENCRYPTION_KEY was set) are returned unchanged.
    """
    if not stored:
        return stored

    fernet = _get_fernet()
    if fernet is None:
        return stored

    from cryptography.fernet import InvalidToken
    try:
        return fernet.decrypt(stored.encode()).decode()
    except InvalidToken:
        if stored.startswith(FERNET_TOKEN_PREFIX):
            logger.warning(
                "Stored secret looks encrypted but does not decrypt with ENCRYPTION_KEY; "
                "was the key rotated?"
            )
        return stored
