"""
Encryption utilities for stored delivery credentials (api keys, client secrets,
passwords). Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY.

Encrypted values carry an "enc:" prefix so plaintext values written before a
key was configured keep working.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:"


def _get_fernet():
    """Get a Fernet cipher using the configured encryption key."""
    from cryptography.fernet import Fernet
    from eventrelay.config import get_settings
    settings = get_settings()

    key = settings.encryption_key
    if not key:
        return None

    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_value(plaintext: str) -> str:
    """
    Encrypt a string value. Returns "enc:<token>".
    Falls back to storing plaintext if encryption key is not configured.
    """
    if not plaintext or plaintext.startswith(ENCRYPTED_PREFIX):
        return plaintext

    fernet = _get_fernet()
    if fernet is None:
        logger.warning("ENCRYPTION_KEY not configured - storing credential as-is")
        return plaintext

    return ENCRYPTED_PREFIX + fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(stored: Optional[str]) -> Optional[str]:
    """
    Decrypt a value written by encrypt_value. Unprefixed values are returned
    as-is (legacy plaintext).
    """
    if not stored or not stored.startswith(ENCRYPTED_PREFIX):
        return stored

    fernet = _get_fernet()
    if fernet is None:
        raise ValueError("Encrypted credential found but ENCRYPTION_KEY is not configured")

    from cryptography.fernet import InvalidToken
    try:
        return fernet.decrypt(stored[len(ENCRYPTED_PREFIX):].encode()).decode()
    except InvalidToken as e:
        raise ValueError("Credential could not be decrypted with the configured key") from e
