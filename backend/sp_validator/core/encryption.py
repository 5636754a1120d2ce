"""
Encryption service for SP Validator.
Provides AES-256-GCM encryption for secrets kept at rest (tested credentials,
webhook payload snapshots, queued job payloads).
"""
import base64
import hashlib
import hmac
import json
import logging
import os
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import settings

logger = logging.getLogger(__name__)

IV_SIZE = 12
TAG_SIZE = 16


class EncryptionError(Exception):
    """Custom exception for encryption-related errors"""
    pass


class EncryptionService:
    """Field encryption keyed off ENCRYPTION_MASTER_KEY."""

    def __init__(self, master_key: Optional[str] = None):
        self.backend = default_backend()
        self._master_key_str = master_key
        self._derived: dict = {}

    def _master_key_source(self) -> str:
        master_key_str = self._master_key_str or settings.ENCRYPTION_MASTER_KEY or os.getenv("ENCRYPTION_MASTER_KEY", "")
        if not master_key_str:
            raise EncryptionError(
                "ENCRYPTION_MASTER_KEY is not set. "
                "Please set it to a secure random string."
            )
        return master_key_str

    def _get_master_key(self) -> bytes:
        """Get or derive the 32-byte encryption key"""
        master_key_str = self._master_key_source()
        cached = self._derived.get(master_key_str)
        if cached is not None:
            return cached

        # Salt is derived from the master key so rotating the key rotates the salt.
        salt = hmac.new(master_key_str.encode(), b"SPValidator-Salt-Derivation", hashlib.sha256).digest()[:16]
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
            backend=self.backend,
        )
        key = kdf.derive(master_key_str.encode("utf-8"))
        self._derived[master_key_str] = key
        return key

    def encrypt_field(self, table_name: str, field_name: str, value: Any) -> Optional[str]:
        """
        Encrypt a JSON-serializable value.

        Returns:
            Base64-encoded IV + ciphertext + tag, or None if value is None
        """
        if value is None:
            return None

        try:
            data = json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
            iv = os.urandom(IV_SIZE)
            cipher = Cipher(algorithms.AES(self._get_master_key()), modes.GCM(iv), backend=self.backend)
            encryptor = cipher.encryptor()
            ciphertext = encryptor.update(data) + encryptor.finalize()
            return base64.b64encode(iv + ciphertext + encryptor.tag).decode("ascii")
        except EncryptionError:
            raise
        except Exception as e:
            logger.error(f"Error encrypting field {table_name}.{field_name}: {e}")
            raise EncryptionError(f"Failed to encrypt field: {e}")

    def decrypt_field(self, table_name: str, field_name: str, encrypted_value: Optional[str]) -> Any:
        """Decrypt a value produced by encrypt_field."""
        if encrypted_value is None:
            return None

        try:
            encrypted_data = base64.b64decode(encrypted_value.encode("ascii"))
            if len(encrypted_data) < IV_SIZE + TAG_SIZE:
                raise EncryptionError("Invalid encrypted data: too short")

            iv = encrypted_data[:IV_SIZE]
            tag = encrypted_data[-TAG_SIZE:]
            ciphertext = encrypted_data[IV_SIZE:-TAG_SIZE]

            cipher = Cipher(algorithms.AES(self._get_master_key()), modes.GCM(iv, tag), backend=self.backend)
            decryptor = cipher.decryptor()
            data = decryptor.update(ciphertext) + decryptor.finalize()
            if not data:
                return None
            return json.loads(data.decode("utf-8"))
        except InvalidTag:
            logger.error(f"Authentication failed for field {table_name}.{field_name}")
            raise EncryptionError("Decryption failed: data may have been tampered with")
        except EncryptionError:
            raise
        except Exception as e:
            logger.error(f"Error decrypting field {table_name}.{field_name}: {e}")
            raise EncryptionError(f"Failed to decrypt field: {e}")

    def is_encrypted_value(self, value: str) -> bool:
        """
        Check if a value appears to be encrypted (basic heuristic).
        JSON plaintext written by the dev-mode fallback never passes strict base64 validation.
        """
        if not isinstance(value, str):
            return False

        try:
            decoded = base64.b64decode(value.strip().encode("ascii"), validate=True)
            return len(decoded) >= IV_SIZE + TAG_SIZE
        except Exception:
            return False


# Global instance
encryption_service = EncryptionService()
