from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .logging import get_logger

logger = get_logger(__name__)


# PUBLIC_INTERFACE
def derive_fernet_key(raw: str) -> bytes:
    """Derive a Fernet key from an arbitrary ENCRYPTION_KEY string.

    32 bytes of SHA-256 over the raw key, base64-url encoded as Fernet expects.
    """
    digest = hashlib.sha256(raw.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class CredentialCipher:
    """Encrypts and decrypts credential material at rest."""

    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise ValueError("ENCRYPTION_KEY is required to store credentials")
        self._fernet = Fernet(derive_fernet_key(encryption_key))

    # PUBLIC_INTERFACE
    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a secret string with Fernet; returns token in urlsafe base64 (None passes through)."""
        if plaintext is None:
            return None
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    # PUBLIC_INTERFACE
    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """Decrypt a token; returns plaintext or None if input is None or unreadable."""
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError):
            # Do not leak the token content in logs
            logger.warning("Failed to decrypt credential token; treating as missing.")
            return None


# PUBLIC_INTERFACE
def generate_state_token() -> str:
    """Generate an unguessable OAuth state value (32 random bytes, urlsafe base64)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")


# PUBLIC_INTERFACE
def verify_bearer(authorization: Optional[str], expected_secret: Optional[str]) -> bool:
    """Check an ``Authorization: Bearer <secret>`` header in constant time.

    An unset expected secret never matches.
    """
    if not expected_secret or not authorization:
        return False
    scheme, _, presented = authorization.partition(" ")
    if scheme.lower() != "bearer" or not presented:
        return False
    return hmac.compare_digest(presented.strip().encode("utf-8"), expected_secret.encode("utf-8"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# PUBLIC_INTERFACE
def compute_expiry(expires_in_seconds: Optional[int], now: Optional[datetime] = None, skew_seconds: int = 30) -> Optional[datetime]:
    """Return absolute expiry time with small safety skew, or None when the provider gave no lifetime."""
    if expires_in_seconds is None:
        return None
    base = now or utcnow()
    return base + timedelta(seconds=max(0, int(expires_in_seconds) - skew_seconds))


# PUBLIC_INTERFACE
def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Check if a timestamp is in the past. A missing expiry means the token does not expire."""
    if expires_at is None:
        return False
    return ensure_aware(expires_at) <= (now or utcnow())


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes (as read back from some stores) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
