"""Credential vault.

Symmetric encryption at rest for provider secrets (OAuth tokens, API keys,
webhook signing secrets). Ciphertexts are Fernet tokens: they carry a version
byte, timestamp, random IV and an HMAC, so a token produced under one key never
decrypts under another.
"""

import binascii
import hashlib
import hmac
import logging
import secrets
from typing import Iterable, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from broker import metrics
from broker.errors import DecryptionError

logger = logging.getLogger(__name__)


def _load_key(key: str | bytes) -> Fernet:
    if isinstance(key, str):
        key = key.encode()
    try:
        return Fernet(key)
    except (ValueError, binascii.Error) as e:
        raise ValueError(
            "Encryption key must be a urlsafe base64-encoded 32-byte key"
        ) from e


class CredentialVault:
    """Encrypts and decrypts secrets with a process-wide key.

    The first key encrypts; any ``previous_keys`` are only tried on decrypt so
    a key can be rotated without re-encrypting every row up front.
    """

    def __init__(self, key: str | bytes, previous_keys: Iterable[str | bytes] = ()):
        self._fernet = MultiFernet([_load_key(key), *(_load_key(k) for k in previous_keys)])

    @classmethod
    def from_settings(cls, settings) -> "CredentialVault":
        """
        Build a vault from application settings.

        A missing key only happens in local development: a throwaway key is
        generated so the service can start, and anything it encrypts is lost
        on restart.
        """
        key = settings.encryption_key
        if not key:
            logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production)")
            key = Fernet.generate_key()
        return cls(key, settings.previous_keys)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string; every call uses a fresh IV."""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises:
            DecryptionError: Wrong key, tampered or truncated ciphertext.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            metrics.record_decryption_failure()
            logger.error(f"Decryption failed: {type(e).__name__} (value_length={len(ciphertext)})")
            raise DecryptionError("Stored credential could not be decrypted") from e

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt(plaintext) if plaintext else None

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        return self.decrypt(ciphertext) if ciphertext else None

    def encrypt_fields(self, fields: Mapping[str, str]) -> dict[str, str]:
        """Encrypt each value of a credential bundle, keeping field names readable."""
        return {name: self.encrypt(str(value)) for name, value in fields.items() if value is not None}

    def decrypt_fields(self, fields: Optional[Mapping[str, str]]) -> dict[str, str]:
        return {name: self.decrypt(value) for name, value in (fields or {}).items()}

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a ciphertext under the current primary key."""
        try:
            return self._fernet.rotate(ciphertext.encode("ascii")).decode("ascii")
        except InvalidToken as e:
            metrics.record_decryption_failure()
            raise DecryptionError("Stored credential could not be decrypted") from e

    # Signing helpers

    @staticmethod
    def generate_secret(nbytes: int = 32) -> str:
        return secrets.token_hex(nbytes)

    @staticmethod
    def sign(secret: str, body: bytes) -> str:
        """HMAC-SHA256 of ``body`` as lowercase hex."""
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    @classmethod
    def verify(cls, secret: str, body: bytes, signature: Optional[str]) -> bool:
        """Constant-time signature check. Accepts an optional ``sha256=`` prefix."""
        if not signature:
            return False
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        return hmac.compare_digest(cls.sign(secret, body), signature.strip().lower())
