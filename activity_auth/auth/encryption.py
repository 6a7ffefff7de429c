"""
Refresh Token Encryption
========================

Authenticated symmetric encryption for Discord refresh tokens at rest.

Tokens are sealed with Fernet (AES-128-CBC + HMAC-SHA256). The random IV and
the timestamp are embedded in the Fernet token, so the returned string is the
complete persisted "refresh token material".

The configured ENCRYPTION_KEY is the standard base64 encoding of 32 random
bytes; it is re-encoded to the urlsafe form Fernet expects.
"""

import base64
import binascii
import logging
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from ..errors import EncryptionError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32


@lru_cache(maxsize=8)
def _fernet_for(key: str) -> Fernet:
    try:
        raw = base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError("encryption key is not valid base64") from e

    if len(raw) != KEY_LENGTH:
        raise EncryptionError(f"encryption key must be {KEY_LENGTH} bytes")

    return Fernet(base64.urlsafe_b64encode(raw))


def generate_key() -> str:
    """Generate a new key in the ENCRYPTION_KEY format."""
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


def encrypt(plaintext: str, key: str) -> str:
    """
    Encrypt a refresh token.

    Args:
        plaintext: Token to seal
        key: Base64-encoded 32-byte key

    Returns:
        Fernet token (urlsafe base64 text) with the IV embedded

    Raises:
        EncryptionError: If the key is invalid
    """
    fernet = _fernet_for(key)
    return fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt(ciphertext: str, key: str) -> str:
    """
    Decrypt refresh token material.

    Fails closed: tampered ciphertext, a different key, or anything that is
    not a Fernet token raises EncryptionError. Callers must never fall back
    to treating the input as plaintext.

    Raises:
        EncryptionError: If the material cannot be authenticated
    """
    fernet = _fernet_for(key)

    try:
        plaintext = fernet.decrypt(ciphertext.encode("ascii"))
    except (InvalidToken, UnicodeEncodeError):
        logger.warning("Refresh token material failed authentication")
        raise EncryptionError("failed to decrypt refresh token") from None

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise EncryptionError("failed to decrypt refresh token") from None
