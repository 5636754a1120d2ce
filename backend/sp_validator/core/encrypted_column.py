"""
SQLAlchemy encrypted column type for automatic field encryption/decryption
"""
import hashlib
import json
import logging
from typing import Any, Optional

from sqlalchemy import Text, TypeDecorator
from sqlalchemy.engine import Dialect

from .config import settings
from .encryption import EncryptionError, encryption_service

logger = logging.getLogger(__name__)


def _summarize_value(value: Any) -> str:
    """Return a sanitised summary of a value for debug logging."""
    if value is None:
        return "None"
    if isinstance(value, str):
        digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]
        return f"str(len={len(value)},hash={digest})"
    if isinstance(value, dict):
        return f"dict(keys={list(value.keys())[:5]},len={len(value)})"
    return type(value).__name__


class EncryptedJSON(TypeDecorator):
    """
    Column type that stores a JSON-serializable value encrypted with AES-256-GCM.

    Outside dev/test environments encryption failures are fatal; the service
    refuses to write or read plaintext secrets.
    """

    impl = Text
    cache_ok = True

    def __init__(self, table_name: str, field_name: str, *args, **kwargs):
        self.table_name = table_name
        self.field_name = field_name
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value: Any, dialect: Dialect) -> Optional[str]:
        if value is None:
            return None

        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Value for {self.table_name}.{self.field_name} is not JSON-serializable: {e}")
            raise ValueError(f"Value must be JSON-serializable: {e}")

        try:
            return encryption_service.encrypt_field(self.table_name, self.field_name, value)
        except EncryptionError as e:
            if not settings.is_dev:
                logger.error(
                    "Encryption failed for %s.%s -- refusing to store plaintext. Reason: %s",
                    self.table_name,
                    self.field_name,
                    e,
                )
                raise
            logger.warning(
                "Failed to encrypt %s.%s (storing plaintext fallback in dev mode). Reason: %s | value=%s",
                self.table_name,
                self.field_name,
                e,
                _summarize_value(value),
            )
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))

    def process_result_value(self, value: Optional[str], dialect: Dialect) -> Any:
        if value is None:
            return None

        if not encryption_service.is_encrypted_value(value):
            logger.warning(
                "Expected encrypted value for %s.%s but received plaintext. value=%s",
                self.table_name,
                self.field_name,
                _summarize_value(value),
            )
            try:
                return json.loads(value)
            except (json.JSONDecodeError, TypeError):
                return value

        try:
            return encryption_service.decrypt_field(self.table_name, self.field_name, value)
        except EncryptionError as e:
            logger.error(
                "Decryption failed for %s.%s. Reason: %s",
                self.table_name,
                self.field_name,
                e,
            )
            raise
