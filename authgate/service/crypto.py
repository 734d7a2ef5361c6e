from __future__ import annotations

import base64
import hashlib
import hmac

from cryptography.fernet import Fernet, InvalidToken

from authgate.logging import get_logger

logger = get_logger(__name__)


def derive_key(key_material: str) -> bytes:
    """Stretch operator key material into a Fernet key."""
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def hash_backup_code(code: str) -> str:
    return sha256_hex(normalize_backup_code(code))


def normalize_backup_code(code: str) -> str:
    return "".join(code.split()).replace("-", "").lower()


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())


class SecretDecryptionError(Exception):
    """Stored ciphertext could not be decrypted with the configured key."""


class SecretCipher:
    """Symmetric cipher for two-factor secrets at rest.

    Constructed from an operator-supplied secret; only the same secret can
    reverse the encryption.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material is required")
        try:
            self._fernet = Fernet(derive_key(key_material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize secret cipher") from exc

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            logger.warning("secret_decrypt_failed")
            raise SecretDecryptionError("stored secret cannot be decrypted") from exc
