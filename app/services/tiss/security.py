"""
TISS Security Service
Encryption at rest for certificate material
"""

import hashlib
import hmac
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config import settings

logger = logging.getLogger(__name__)

_fallback_key: Optional[bytes] = None


def _resolve_key(encryption_key: Optional[str]) -> bytes:
    global _fallback_key

    if encryption_key:
        return encryption_key.encode()

    if _fallback_key is None:
        _fallback_key = Fernet.generate_key()
        logger.warning("TISS_ENCRYPTION_KEY not set, using generated key (not suitable for production)")
    return _fallback_key


class TISSSecurityService:
    """Service for TISS security operations"""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Args:
            encryption_key: Fernet key (urlsafe base64). Defaults to TISS_ENCRYPTION_KEY.
        """
        try:
            self.fernet = Fernet(_resolve_key(encryption_key or settings.TISS_ENCRYPTION_KEY))
        except ValueError:
            logger.error("TISS_ENCRYPTION_KEY is not a valid Fernet key")
            raise

    def encrypt_data(self, data: bytes) -> bytes:
        return self.fernet.encrypt(data)

    def decrypt_data(self, token: bytes) -> bytes:
        """
        Raises:
            InvalidToken: data was encrypted with another key or tampered with
        """
        return self.fernet.decrypt(token)

    @staticmethod
    def calculate_integrity_hash(data: bytes) -> str:
        """SHA-256 hex digest used for audit integrity"""
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def verify_integrity(cls, data: bytes, expected_hash: str) -> bool:
        return hmac.compare_digest(cls.calculate_integrity_hash(data), expected_hash)


__all__ = ["TISSSecurityService", "InvalidToken"]
