"""
Encrypted OAuth token cache.

Token material is encrypted with AES-256-GCM before it reaches Redis, even
though Redis is trusted, and expires with the token rather than with response
freshness - which is why it does not share the response cache.

The AES key is derived from the configured secret with HKDF-SHA256; the raw
secret is never used as a key. Any decrypt failure (tampering, wrong key,
corruption) reads exactly like a cache miss.
"""
import base64
import json
import logging
import os
import time
from typing import Any, Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from leadrelay.services.errors import CredentialEncryptionError
from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)

RECORD_VERSION = 1
IV_BYTES = 12
KDF_INFO = b"leadrelay-credential-cache-v1"
EXPIRY_BUFFER_SECONDS = 300
MIN_TTL_SECONDS = 300
DEFAULT_TTL_SECONDS = 3600


def derive_key(secret: str) -> bytes:
    """Derive a 256-bit AES key from the configured secret."""
    if not secret:
        raise ValueError("credential encryption secret is not configured")
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=KDF_INFO,
    ).derive(secret.encode())


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode(), validate=True)


class CredentialCache:
    """Encrypted, TTL-bound store of OAuth token material keyed by provider + subject."""

    def __init__(
        self,
        redis,
        secret: str,
        expiry_buffer_seconds: int = EXPIRY_BUFFER_SECONDS,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.redis = redis
        self._aesgcm = AESGCM(derive_key(secret))
        self.expiry_buffer_seconds = expiry_buffer_seconds
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock or time.time

    @staticmethod
    def cache_key(provider: str, subject: str) -> str:
        return make_key("credential", provider, subject)

    def compute_ttl(self, token_data: dict) -> int:
        """
        TTL for a token: its own expiry plus the safety buffer, or the default.

        expiry_date is epoch milliseconds (Google-style); expires_in is seconds.
        """
        expiry_date = token_data.get("expiry_date") or token_data.get("expiryDate")
        expires_in = token_data.get("expires_in") or token_data.get("expiresIn")

        if expiry_date:
            remaining = int((float(expiry_date) / 1000.0) - self._clock())
            return max(MIN_TTL_SECONDS, remaining + self.expiry_buffer_seconds)
        if expires_in:
            return int(expires_in) + self.expiry_buffer_seconds
        return self.default_ttl_seconds

    def encrypt(self, token_data: dict) -> dict:
        try:
            plaintext = json.dumps(token_data, separators=(",", ":")).encode()
            iv = os.urandom(IV_BYTES)
            sealed = self._aesgcm.encrypt(iv, plaintext, None)
        except (TypeError, ValueError) as e:
            raise CredentialEncryptionError(f"Failed to encrypt token: {e}") from e

        # AESGCM appends the 16-byte tag to the ciphertext
        return {
            "v": RECORD_VERSION,
            "ciphertext": _b64(sealed[:-16]),
            "iv": _b64(iv),
            "tag": _b64(sealed[-16:]),
        }

    def decrypt(self, record: dict) -> dict:
        """Raises on any failure; callers treat every failure as not-found."""
        iv = _unb64(record["iv"])
        sealed = _unb64(record["ciphertext"]) + _unb64(record["tag"])
        plaintext = self._aesgcm.decrypt(iv, sealed, None)
        data = json.loads(plaintext)
        if not isinstance(data, dict):
            raise ValueError("decrypted token is not an object")
        return data

    async def set(
        self,
        provider: str,
        subject: str,
        token_data: dict,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """
        Encrypt and store token material.

        Raises CredentialEncryptionError if the token cannot be encrypted, so
        a caller never believes a token was persisted when it was not.
        Returns False only when the store itself rejects the write.
        """
        ttl = int(ttl_seconds) if ttl_seconds else self.compute_ttl(token_data)
        record = self.encrypt(token_data)

        try:
            await self.redis.set(self.cache_key(provider, subject), json.dumps(record), ex=ttl)
        except Exception as e:
            logger.error(
                "Failed to cache credentials for %s:%s: %s",
                provider, subject, str(e),
                extra={"provider": provider},
            )
            return False

        logger.info(
            "Cached credentials for %s:%s (ttl=%ds)", provider, subject, ttl,
            extra={"provider": provider},
        )
        return True

    async def get(self, provider: str, subject: str) -> Optional[dict]:
        key = self.cache_key(provider, subject)
        try:
            raw = await self.redis.get(key)
        except Exception as e:
            logger.warning(
                "Credential cache read failed for %s:%s: %s", provider, subject, str(e),
                extra={"provider": provider},
            )
            return None

        if not raw:
            return None

        try:
            return self.decrypt(json.loads(raw))
        except (InvalidTag, KeyError, TypeError, ValueError) as e:
            # Unreadable record: drop it so the token manager re-fetches
            logger.warning(
                "Discarding unreadable credentials for %s:%s (%s)",
                provider, subject, type(e).__name__,
                extra={"provider": provider},
            )
            await self._discard(key)
            return None

    async def delete(self, provider: str, subject: str) -> bool:
        try:
            await self.redis.delete(self.cache_key(provider, subject))
        except Exception as e:
            logger.error(
                "Failed to delete credentials for %s:%s: %s", provider, subject, str(e),
                extra={"provider": provider},
            )
            return False
        logger.info("Deleted credentials for %s:%s", provider, subject, extra={"provider": provider})
        return True

    async def exists(self, provider: str, subject: str) -> bool:
        try:
            return bool(await self.redis.exists(self.cache_key(provider, subject)))
        except Exception as e:
            logger.warning("Credential existence check failed for %s:%s: %s", provider, subject, str(e))
            return False

    async def ttl(self, provider: str, subject: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None if the record is missing."""
        try:
            remaining = await self.redis.ttl(self.cache_key(provider, subject))
        except Exception as e:
            logger.debug("Credential TTL lookup failed: %s", str(e))
            return None
        return remaining if remaining and remaining > 0 else None

    async def _discard(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.debug("Failed to discard credential record %s: %s", key, str(e))


def token_expired(token_data: dict[str, Any], now: Optional[float] = None) -> bool:
    """True if the token's own expiry_date (epoch ms) has passed."""
    expiry_date = token_data.get("expiry_date") or token_data.get("expiryDate")
    if not expiry_date:
        return False
    return float(expiry_date) / 1000.0 <= (now if now is not None else time.time())
