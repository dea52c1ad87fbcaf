"""Time-based reconciliation of holds and invites.

The sweep is driven by a deadline predicate and guarded per-hold transitions,
so it can be interrupted, restarted or run concurrently with itself and with
user actions: a hold is expired, and its capacity released, at most once.
Claimed registrations that are never completed are released by a separate
pass over confirmed holds, so the pending sweep never touches them.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import structlog
from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.db import transaction
from django.utils import timezone

from registrations.exceptions import (
    AlreadyRegisteredError,
    ConcurrentModificationError,
    InvalidBatchError,
    InvalidInviteTransitionError,
    RowValidationFailedError,
)
from registrations.models import GroupBatchRow, RegistrationHold, RegistrationInvite

from . import capacity_ledger, invite_service, invite_state, upload_link_service
from .invite_state import InviteEvent

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    holds_expired: int = 0
    invites_expired: int = 0


def _expire_hold(hold_id: UUID, now: datetime) -> tuple[int, int]:
    with transaction.atomic():
        hold = RegistrationHold.objects.select_for_update(skip_locked=True).filter(pk=hold_id).first()
        if hold is None or not capacity_ledger.expire(hold, now=now):
            return 0, 0
        invites_expired = 0
        for invite in RegistrationInvite.objects.active().filter(hold=hold):
            invite_state.apply(invite, InviteEvent.EXPIRE, now=now)
            invites_expired += 1
        return 1, invites_expired


def sweep(now: datetime | None = None, batch_size: int | None = None) -> SweepResult:
    """Expire pending holds whose deadline has passed, oldest first.

    Each hold is handled in its own transaction. Confirmed holds are never
    touched.

    Args:
        now: Reference time.
        batch_size: Maximum number of holds examined. Defaults to ``EXPIRY_SWEEP_BATCH_SIZE``.

    Returns:
        How many holds and invites this run expired.
    """
    now = now or timezone.now()
    batch_size = batch_size or settings.EXPIRY_SWEEP_BATCH_SIZE
    result = SweepResult()
    hold_ids = list(
        RegistrationHold.objects.overdue(now).order_by("expires_at").values_list("pk", flat=True)[:batch_size]
    )
    for hold_id in hold_ids:
        try:
            holds, invites = _expire_hold(hold_id, now)
        except ConcurrentModificationError:
            # an invite changed under us; the whole hold is retried on the next run
            logger.info("expiry_sweep_hold_skipped", hold_id=str(hold_id))
            continue
        result.holds_expired += holds
        result.invites_expired += invites
    logger.info(
        "expiry_sweep_completed",
        examined=len(hold_ids),
        holds_expired=result.holds_expired,
        invites_expired=result.invites_expired,
    )
    return result


def _lapse_hold(hold_id: UUID, now: datetime) -> bool:
    with transaction.atomic():
        hold = RegistrationHold.objects.select_for_update(skip_locked=True).filter(pk=hold_id).first()
        return hold is not None and capacity_ledger.lapse(hold, now=now)


def release_lapsed_claims(now: datetime | None = None, batch_size: int | None = None) -> int:
    """Free the seats of claimed registrations that were not completed before their deadline.

    Separate from :func:`sweep`, which only ever looks at pending holds. The
    claimed invite keeps its ``claimed`` status as history; its row can be
    reissued afterwards.

    Returns:
        The number of holds released.
    """
    now = now or timezone.now()
    batch_size = batch_size or settings.EXPIRY_SWEEP_BATCH_SIZE
    hold_ids = list(
        RegistrationHold.objects.lapsed(now).order_by("expires_at").values_list("pk", flat=True)[:batch_size]
    )
    released = sum(1 for hold_id in hold_ids if _lapse_hold(hold_id, now))
    logger.info("lapsed_claims_released", examined=len(hold_ids), released=released)
    return released


def _is_reissuable(invite: RegistrationInvite) -> bool:
    if not invite.is_current:
        return False
    if invite.status == RegistrationInvite.Status.EXPIRED:
        return True
    # a claim whose registration lapsed
    return (
        invite.status == RegistrationInvite.Status.CLAIMED and invite.hold.status == RegistrationHold.Status.EXPIRED
    )


@transaction.atomic
def reissue_invite(
    invite: RegistrationInvite, *, actor: AbstractUser | None = None, now: datetime | None = None
) -> RegistrationInvite:
    """Give a row whose current invite expired a new invite backed by a fresh hold.

    A claimed invite whose registration lapsed counts as expired here.

    Raises:
        InvalidInviteTransitionError: If the invite is not the row's current, expired invite.
        InvalidBatchError: If the batch was cancelled.
        UploadLinkUnavailableError: If the upload link refuses another invite.
        RowValidationFailedError: If the recipient meanwhile got another open invite.
        AlreadyRegisteredError: If the recipient is already registered for the edition.
        CapacityExhaustedError: If no capacity is left. Nothing is created in that case.
    """
    now = now or timezone.now()
    invite = (
        RegistrationInvite.objects.select_for_update()
        .select_related("batch", "batch__distance", "batch_row", "upload_link", "hold")
        .get(pk=invite.pk)
    )
    if not _is_reissuable(invite):
        raise InvalidInviteTransitionError(invite.status, "reissue")
    batch = invite.batch
    if batch.cancelled_at is not None:
        raise InvalidBatchError("The batch has been cancelled.")
    if invite.upload_link is not None:
        link = upload_link_service.lock_upload_link(invite.upload_link)
        upload_link_service.assert_link_usable(link, now, requested_invites=1)
    if invite_service.has_open_invite(invite.edition_id, invite.email_normalized):
        raise RowValidationFailedError(invite_service.EXISTING_ACTIVE_INVITE)
    if invite_service.has_active_registration(invite.edition_id, invite.email_normalized):
        raise AlreadyRegisteredError()

    hold = capacity_ledger.reserve(batch.distance, now=now)
    invite_state.retire(invite, now=now)
    new_invite = invite_service.create_invite(
        batch_row=invite.batch_row,
        hold=hold,
        email=invite.email,
        created_by=actor,
        supersedes=invite,
    )
    GroupBatchRow.objects.filter(pk=invite.batch_row_id).update(created_hold=hold, reservation_error="", updated_at=now)
    logger.info("invite_reissued", old_invite_id=str(invite.pk), invite_id=str(new_invite.pk), hold_id=str(hold.pk))
    return new_invite


@transaction.atomic
def extend_hold(invite: RegistrationInvite, *, now: datetime | None = None) -> datetime:
    """Push the deadline of a claimed invite's hold by ``HOLD_EXTENSION``.

    With ``HOLD_EXTENSION_MODE = "compound"`` the extension starts from the later
    of now and the current deadline; with ``"reset"`` it starts from now.

    Returns:
        The new deadline.

    Raises:
        InvalidInviteTransitionError: If the invite is not the current claimed
            invite or its hold is no longer extendable.
    """
    now = now or timezone.now()
    invite = RegistrationInvite.objects.select_related("hold").get(pk=invite.pk)
    if not invite.is_current or invite.status != RegistrationInvite.Status.CLAIMED:
        raise InvalidInviteTransitionError(invite.status, "extend the hold of")
    hold = RegistrationHold.objects.select_for_update().get(pk=invite.hold_id)
    if hold.status != RegistrationHold.Status.CONFIRMED or hold.finalized_at is not None:
        raise InvalidInviteTransitionError(
            invite.status, "extend the hold of", detail="The registration is final and can no longer be extended."
        )

    if settings.HOLD_EXTENSION_MODE == "compound" and hold.expires_at is not None:
        base = max(now, hold.expires_at)
    else:
        base = now
    expires_at = base + settings.HOLD_EXTENSION
    capacity_ledger.reschedule(hold, expires_at=expires_at, now=now)
    logger.info("hold_extended", hold_id=str(hold.pk), invite_id=str(invite.pk), expires_at=expires_at.isoformat())
    return expires_at
