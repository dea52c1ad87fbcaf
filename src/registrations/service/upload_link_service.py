"""Usage limits and validity windows of upload links."""

from datetime import datetime
from enum import StrEnum

import structlog
from django.contrib.auth.models import AbstractUser
from django.utils import timezone

from registrations.exceptions import TokenInvalidError, UploadLinkUnavailableError
from registrations.models import EventEdition, GroupBatch, RegistrationInvite, UploadLink

from . import tokens

logger = structlog.get_logger(__name__)


class UploadLinkStatus(StrEnum):
    ACTIVE = "ACTIVE"
    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    DISABLED = "DISABLED"
    MAXED_OUT = "MAXED_OUT"


def count_active_invites(link: UploadLink) -> int:
    """Number of distinct batch rows of the link whose current invite is still open.

    Superseded invites are never current, so rotating a row's invite keeps the
    count unchanged.
    """
    return (
        RegistrationInvite.objects.active()
        .filter(upload_link=link)
        .values("batch_row")
        .distinct()
        .count()
    )


def count_batches(link: UploadLink) -> int:
    return GroupBatch.objects.filter(upload_link=link).count()


def check_link_usable(
    link: UploadLink,
    now: datetime | None = None,
    *,
    requested_invites: int = 0,
    requested_batches: int = 0,
) -> UploadLinkStatus:
    """Compute the status of an upload link.

    The status is derived from the link's stored state and usage at call time.

    Args:
        link: The upload link.
        now: Reference time.
        requested_invites: Invites the caller is about to create.
        requested_batches: Batches the caller is about to create.

    Returns:
        The first applicable status in the order revoked, disabled, not started,
        expired, maxed out; ``ACTIVE`` otherwise.
    """
    now = now or timezone.now()
    if link.revoked_at is not None:
        return UploadLinkStatus.REVOKED
    if not link.is_active:
        return UploadLinkStatus.DISABLED
    if link.starts_at is not None and now < link.starts_at:
        return UploadLinkStatus.NOT_STARTED
    if link.ends_at is not None and now >= link.ends_at:
        return UploadLinkStatus.EXPIRED
    if link.max_invites is not None and count_active_invites(link) + requested_invites > link.max_invites:
        return UploadLinkStatus.MAXED_OUT
    if link.max_batches is not None and count_batches(link) + requested_batches > link.max_batches:
        return UploadLinkStatus.MAXED_OUT
    return UploadLinkStatus.ACTIVE


def assert_link_usable(
    link: UploadLink,
    now: datetime | None = None,
    *,
    requested_invites: int = 0,
    requested_batches: int = 0,
) -> None:
    """Raise ``UploadLinkUnavailableError`` unless the link is active."""
    status = check_link_usable(link, now, requested_invites=requested_invites, requested_batches=requested_batches)
    if status != UploadLinkStatus.ACTIVE:
        logger.info("upload_link_refused", upload_link_id=str(link.pk), status=status.value)
        raise UploadLinkUnavailableError(status.value)


def lock_upload_link(link: UploadLink) -> UploadLink:
    """Re-read the link with a row lock. Must be called inside a transaction."""
    return UploadLink.objects.select_for_update().get(pk=link.pk)


def create_upload_link(
    edition: EventEdition,
    created_by: AbstractUser | None,
    *,
    name: str = "",
    starts_at: datetime | None = None,
    ends_at: datetime | None = None,
    max_batches: int | None = None,
    max_invites: int | None = None,
) -> tuple[UploadLink, str]:
    """Create an upload link.

    Returns:
        The link and its raw token. The raw token is not stored and cannot be
        recovered later.
    """
    raw = tokens.generate_token()
    link = UploadLink.objects.create(
        edition=edition,
        token_hash=tokens.hash_token(raw),
        token_prefix=tokens.token_prefix(raw),
        name=name,
        created_by=created_by,
        starts_at=starts_at,
        ends_at=ends_at,
        max_batches=max_batches,
        max_invites=max_invites,
    )
    logger.info("upload_link_created", upload_link_id=str(link.pk), token_prefix=link.token_prefix)
    return link, raw


def revoke_upload_link(link: UploadLink, revoked_by: AbstractUser | None, now: datetime | None = None) -> UploadLink:
    """Revoke a link. Revoking an already revoked link keeps the original timestamp."""
    now = now or timezone.now()
    updated = UploadLink.objects.filter(pk=link.pk, revoked_at__isnull=True).update(
        revoked_at=now, revoked_by=revoked_by, updated_at=now
    )
    link.refresh_from_db()
    if updated:
        logger.info("upload_link_revoked", upload_link_id=str(link.pk))
    return link


def get_upload_link_by_token(raw: str) -> UploadLink:
    """Look up a link by its presented raw token.

    Raises:
        TokenInvalidError: If no link matches.
    """
    link = UploadLink.objects.select_related("edition").filter(token_hash=tokens.hash_token(raw)).first()
    if link is None:
        raise TokenInvalidError()
    return link
