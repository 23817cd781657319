"""
Encryption of secrets stored in the configuration file.

Secrets such as the LDAP bind password or the Moodle web service token can be
stored encrypted as "enc:<fernet token>". The key comes from the
SYNC_SECRET_KEY environment variable or from a key file.
"""

import os
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = 'enc:'
KEY_ENV_VAR = 'SYNC_SECRET_KEY'


class CryptoError(Exception):
    """Raised when a secret cannot be encrypted or decrypted."""
    pass


def generate_key() -> str:
    """Generate a new key suitable for SYNC_SECRET_KEY or a key file."""
    return Fernet.generate_key().decode('ascii')


def is_encrypted(value) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)


class SecretBox:
    """Encrypts and decrypts configuration secrets with a Fernet key."""

    def __init__(self, key: str):
        try:
            self._fernet = Fernet(key.encode('ascii') if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise CryptoError(f"Invalid secret key: {e}")

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> Optional['SecretBox']:
        """
        Build a SecretBox from the environment or the crypto.key_file setting.

        Returns:
            SecretBox, or None when no key is configured
        """
        key = os.getenv(KEY_ENV_VAR)
        key_file = (config or {}).get('key_file')
        if not key and key_file:
            try:
                with open(key_file, 'r') as f:
                    key = f.read().strip()
            except OSError as e:
                raise CryptoError(f"Cannot read key file {key_file}: {e}")
        if not key:
            return None
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        token = self._fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')
        return ENCRYPTED_PREFIX + token

    def decrypt(self, value: str) -> str:
        """Decrypt an "enc:" value; other values are returned unchanged."""
        if not is_encrypted(value):
            return value
        try:
            return self._fernet.decrypt(value[len(ENCRYPTED_PREFIX):].encode('ascii')).decode('utf-8')
        except InvalidToken:
            raise CryptoError("Failed to decrypt secret: wrong key or corrupted value")
