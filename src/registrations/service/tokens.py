"""Opaque bearer tokens for upload links and claim tokens for invites.

Only hashes are stored. A claim token is a pure function of the invite id and
a server-held secret, so it can be re-derived whenever the invite has to be
(re)sent and changes only when rotation creates a new invite.
"""

import hashlib
import secrets
from uuid import UUID

from django.conf import settings

from common.signing import derive_key, sign

TOKEN_PREFIX_LENGTH = 8

_CLAIM_TOKEN_DOMAIN = "roster:claim-token:v1"


def generate_token() -> str:
    """Generate a random URL-safe bearer token."""
    return secrets.token_urlsafe(32)


def hash_token(raw: str) -> str:
    """Return the SHA-256 hex digest stored in place of a token."""
    return hashlib.sha256(raw.encode()).hexdigest()


def token_prefix(raw: str) -> str:
    """Return the display-safe prefix of a token. Not usable for lookup."""
    return raw[:TOKEN_PREFIX_LENGTH]


def derive_claim_token(invite_id: UUID | str) -> str:
    """Derive the claim token for an invite.

    Args:
        invite_id: The invite's primary key.

    Returns:
        URL-safe HMAC-SHA256 of the invite id keyed with the claim-token secret.
    """
    key = derive_key(_CLAIM_TOKEN_DOMAIN, settings.REGISTRATION_TOKEN_SECRET)
    return sign(key, str(invite_id))


def mint_invite_credentials(invite_id: UUID) -> tuple[str, str]:
    """Return the ``(token_hash, token_prefix)`` pair persisted on an invite."""
    claim_token = derive_claim_token(invite_id)
    return hash_token(claim_token), token_prefix(claim_token)
