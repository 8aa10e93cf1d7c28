"""Signing token generation and hashing.

Signing links carry an opaque random value. Only an HMAC of that value is
stored, so a database dump cannot be turned back into working links.

Security properties:
- Values carry 256 bits of entropy (``secrets.token_urlsafe(32)``).
- Hashes are HMAC'd using a key derived from APP_SECRET_KEY.
- Rotating APP_SECRET_KEY invalidates every outstanding link.
- Email one-time codes are stored the same way, keyed to their token.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from functools import lru_cache
from uuid import UUID

from countersign.config import get_settings

TOKEN_BYTES = 32
# token_urlsafe(32) yields 43 characters; anything far off is not ours
_MIN_TOKEN_LENGTH = 32
_MAX_TOKEN_LENGTH = 128


@lru_cache(maxsize=1)
def _get_hmac_key() -> bytes:
    secret = get_settings().app_secret_key
    # Domain-separated key derivation.
    return hashlib.sha256(f"countersign:signing-token:{secret}".encode()).digest()


def generate_token_value() -> str:
    """Create a new URL-safe signing token value."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def is_well_formed(value: str) -> bool:
    return _MIN_TOKEN_LENGTH <= len(value) <= _MAX_TOKEN_LENGTH


def hash_token(value: str) -> str:
    """Compute the stored lookup hash (hex HMAC-SHA256) of a token value."""
    key = _get_hmac_key()
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()


def build_signing_link(value: str, base_url: str | None = None) -> str:
    """Build the URL the delivery service sends to the signer."""
    base = (base_url or get_settings().signing_link_base_url).rstrip("/")
    return f"{base}/{value}"


OTP_DIGITS = 6


def generate_otp_code() -> str:
    """Create a numeric one-time code, zero padded."""
    return f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"


def hash_otp(code: str, token_id: UUID) -> str:
    """HMAC of a one-time code, bound to the token it was issued for."""
    key = _get_hmac_key()
    message = f"otp:{token_id}:{code.strip()}".encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def otp_matches(code: str, token_id: UUID, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_otp(code, token_id), expected_hash)
