"""Keyed hashing helpers built on Django's SECRET_KEY.

Keys are derived per purpose with a domain separator, so a signature produced
for one feature can never be replayed against another.
"""

import base64
import hashlib
import hmac
from functools import lru_cache

from django.conf import settings

__all__ = ["derive_key", "sign"]


@lru_cache(maxsize=8)
def derive_key(domain: str, secret: str = "") -> bytes:
    """Derive a signing key for a given purpose.

    The key is lazily computed on first use and cached for the lifetime of the
    process.

    Args:
        domain: Domain separator, e.g. ``"roster:claim-token:v1"``.
        secret: Explicit secret; falls back to ``settings.SECRET_KEY`` when empty.

    Returns:
        Bytes suitable for HMAC-SHA256 signing.
    """
    return hashlib.sha256(f"{domain}:{secret or settings.SECRET_KEY}".encode()).digest()


def sign(key: bytes, message: str) -> str:
    """Return the URL-safe, unpadded base64 HMAC-SHA256 of ``message``."""
    digest = hmac.new(key, message.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
