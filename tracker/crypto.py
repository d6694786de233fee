"""
AES-256-GCM encryption for Site credentials.

Uses TRACKER_ENCRYPTION_KEY (32-byte hex). Without a key values are stored as
plaintext, which is only meant for local development.
"""
import base64
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from django.conf import settings

logger = logging.getLogger(__name__)

IV_LENGTH = 12
KEY_LENGTH = 32


def _get_key():
    key_hex = getattr(settings, 'TRACKER_ENCRYPTION_KEY', '') or ''
    if len(key_hex) != KEY_LENGTH * 2:
        return None
    try:
        return bytes.fromhex(key_hex)
    except ValueError:
        logger.warning("TRACKER_ENCRYPTION_KEY is not valid hex, storing credentials unencrypted")
        return None


def encrypt(plaintext: str) -> str:
    """Return base64(iv || ciphertext || tag), or plaintext when no key is configured"""
    key = _get_key()
    if key is None:
        return plaintext

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode('utf-8'), None)
    return base64.b64encode(iv + sealed).decode('ascii')


def decrypt(value: str) -> str:
    key = _get_key()
    if key is None:
        return value

    try:
        data = base64.b64decode(value)
        return AESGCM(key).decrypt(data[:IV_LENGTH], data[IV_LENGTH:], None).decode('utf-8')
    except (ValueError, InvalidTag):
        # Stored before a key was configured
        return value


def encrypt_optional(value):
    """Encrypt a credential field; blank input clears it"""
    if not isinstance(value, str) or not value.strip():
        return None
    return encrypt(value.strip())
