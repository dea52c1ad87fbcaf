"""Operations on individual registration invites."""

from datetime import datetime
from uuid import UUID

import structlog
from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.validators import validate_email
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from common.utils import normalize_email
from registrations.exceptions import (
    AlreadyClaimedError,
    AlreadyRegisteredError,
    EmailMismatchError,
    InvalidInviteTransitionError,
    InviteExpiredError,
    ResendCooldownError,
    ResendLimitError,
    RowValidationFailedError,
    TokenInvalidError,
)
from registrations.models import GroupBatchRow, RegistrationHold, RegistrationInvite

from . import capacity_ledger, invite_state, tokens
from .invite_state import InviteEvent

logger = structlog.get_logger(__name__)

Status = RegistrationInvite.Status

EXISTING_ACTIVE_INVITE = "EXISTING_ACTIVE_INVITE"


def has_open_invite(edition_id: UUID, email_normalized: str, *, exclude_pk: UUID | None = None) -> bool:
    qs = RegistrationInvite.objects.active().filter(edition_id=edition_id, email_normalized=email_normalized)
    if exclude_pk is not None:
        qs = qs.exclude(pk=exclude_pk)
    return qs.exists()


def has_active_registration(edition_id: UUID, email_normalized: str, *, exclude_hold_pk: UUID | None = None) -> bool:
    """Whether the email already owns capacity in the edition.

    Covers holds bought directly by a user with that email and holds claimed
    through an invite sent to that email.
    """
    qs = (
        RegistrationHold.objects.active()
        .filter(edition_id=edition_id)
        .filter(
            Q(buyer__email__iexact=email_normalized)
            | Q(invites__status=Status.CLAIMED, invites__email_normalized=email_normalized)
        )
    )
    if exclude_hold_pk is not None:
        qs = qs.exclude(pk=exclude_hold_pk)
    return qs.exists()


def create_invite(
    *,
    batch_row: GroupBatchRow,
    hold: RegistrationHold,
    email: str,
    created_by: AbstractUser | None,
    supersedes: RegistrationInvite | None = None,
) -> RegistrationInvite:
    """Mint a new current draft invite for a row.

    The row must not have a current invite anymore.
    """
    batch = batch_row.batch
    invite = RegistrationInvite(
        edition_id=batch.edition_id,
        upload_link_id=batch.upload_link_id,
        batch=batch,
        batch_row=batch_row,
        hold=hold,
        supersedes=supersedes,
        status=Status.DRAFT,
        email=email,
        email_normalized=normalize_email(email),
        expires_at=hold.expires_at,
        is_current=True,
        created_by=created_by,
    )
    invite.token_hash, invite.token_prefix = tokens.mint_invite_credentials(invite.pk)
    invite.save()
    logger.info(
        "invite_created",
        invite_id=str(invite.pk),
        token_prefix=invite.token_prefix,
        batch_row_id=str(batch_row.pk),
        hold_id=str(hold.pk),
        supersedes_id=str(supersedes.pk) if supersedes else None,
    )
    return invite


def _lock(invite: RegistrationInvite) -> RegistrationInvite:
    return RegistrationInvite.objects.select_for_update().select_related("hold").get(pk=invite.pk)


@transaction.atomic
def send_invite(
    invite: RegistrationInvite, *, now: datetime | None = None, enforce_cooldown: bool = True
) -> RegistrationInvite:
    """Mark an invite as sent and queue its delivery after commit.

    Raises:
        InvalidInviteTransitionError: If the invite is terminal or no longer current.
        InviteExpiredError: If the invite is past its deadline.
        ResendLimitError: If the invite reached ``INVITE_MAX_SEND_COUNT``.
        ResendCooldownError: If the last send is more recent than ``INVITE_RESEND_COOLDOWN``.
    """
    from registrations.tasks import send_registration_invite

    now = now or timezone.now()
    invite = _lock(invite)
    if not invite.is_current:
        raise InvalidInviteTransitionError(invite.status, InviteEvent.SEND.value)
    invite_state.next_status(invite.status, InviteEvent.SEND)
    if invite.expires_at is not None and invite.expires_at <= now:
        raise InviteExpiredError()
    if invite.send_count >= settings.INVITE_MAX_SEND_COUNT:
        raise ResendLimitError()
    if enforce_cooldown and invite.last_sent_at is not None:
        ready_at = invite.last_sent_at + settings.INVITE_RESEND_COOLDOWN
        if ready_at > now:
            raise ResendCooldownError(retry_after=int((ready_at - now).total_seconds()) + 1)

    invite_state.apply(invite, InviteEvent.SEND, now=now)
    invite_id = str(invite.pk)
    transaction.on_commit(lambda: send_registration_invite.delay(invite_id))
    return invite


def resend_invite(invite: RegistrationInvite, *, now: datetime | None = None) -> RegistrationInvite:
    """Send (or send again) a single invite, honouring the resend cooldown."""
    return send_invite(invite, now=now, enforce_cooldown=True)


@transaction.atomic
def rotate_invite_token(
    invite: RegistrationInvite, *, actor: AbstractUser | None = None, now: datetime | None = None
) -> RegistrationInvite:
    """Replace an open invite with a new one carrying a new claim token.

    The previous invite becomes ``superseded``. Recipient, row, hold and
    deadline carry over, so capacity and link usage are unchanged.

    Returns:
        The new current invite, in ``draft``.
    """
    now = now or timezone.now()
    invite = _lock(invite)
    invite_state.apply(invite, InviteEvent.SUPERSEDE, now=now)
    new_invite = create_invite(
        batch_row=invite.batch_row,
        hold=invite.hold,
        email=invite.email,
        created_by=actor,
        supersedes=invite,
    )
    logger.info("invite_rotated", old_invite_id=str(invite.pk), invite_id=str(new_invite.pk))
    return new_invite


@transaction.atomic
def update_invite_email(
    invite: RegistrationInvite, email: str, *, now: datetime | None = None
) -> RegistrationInvite:
    """Change the recipient of an open invite. The claim token stays the same.

    Raises:
        django.core.exceptions.ValidationError: If ``email`` is not a valid address.
        InvalidInviteTransitionError: If the invite is terminal or no longer current.
        RowValidationFailedError: If another open invite already targets the address.
        AlreadyRegisteredError: If the address is already registered for the edition.
    """
    now = now or timezone.now()
    email = email.strip()
    validate_email(email)
    normalized = normalize_email(email)

    invite = _lock(invite)
    if invite.is_terminal or not invite.is_current:
        raise InvalidInviteTransitionError(invite.status, "edit")
    if normalized != invite.email_normalized:
        if has_open_invite(invite.edition_id, normalized, exclude_pk=invite.pk):
            raise RowValidationFailedError(EXISTING_ACTIVE_INVITE)
        if has_active_registration(invite.edition_id, normalized):
            raise AlreadyRegisteredError()

    updated = RegistrationInvite.objects.filter(pk=invite.pk, status=invite.status, is_current=True).update(
        email=email, email_normalized=normalized, updated_at=now
    )
    if not updated:
        raise InvalidInviteTransitionError(invite.status, "edit")
    invite.email = email
    invite.email_normalized = normalized

    row = invite.batch_row
    row.raw_data = {**(row.raw_data or {}), "email": email}
    row.email_normalized = normalized
    row.save(update_fields=["raw_data", "email_normalized", "updated_at"])
    logger.info("invite_email_updated", invite_id=str(invite.pk))
    return invite


@transaction.atomic
def cancel_invite(invite: RegistrationInvite, *, now: datetime | None = None) -> RegistrationInvite:
    """Cancel an open invite and release its hold.

    The release is part of the same transaction: if it cannot be committed the
    invite stays open and ``CapacityReleaseError`` is raised.
    """
    now = now or timezone.now()
    invite = _lock(invite)
    invite_state.apply(invite, InviteEvent.CANCEL, now=now)
    capacity_ledger.release_or_escalate(invite.hold, now=now)
    logger.info("invite_cancelled", invite_id=str(invite.pk), hold_id=str(invite.hold_id))
    return invite


@transaction.atomic
def claim_invite(claim_token: str, user: AbstractUser, *, now: datetime | None = None) -> UUID:
    """Claim an invite for ``user`` and confirm its hold.

    Claiming an invite the same user already claimed returns the same hold.

    Returns:
        The id of the confirmed registration hold.

    Raises:
        TokenInvalidError: Unknown token, or the invite is not claimable (never sent, cancelled, replaced).
        AlreadyClaimedError: Another user claimed the invite.
        InviteExpiredError: The invite or its hold is past its deadline.
        EmailMismatchError: The user's email differs from the invite's recipient.
        AlreadyRegisteredError: The user already holds a registration for the edition.
    """
    now = now or timezone.now()
    invite = (
        RegistrationInvite.objects.select_for_update()
        .select_related("hold")
        .filter(token_hash=tokens.hash_token(claim_token))
        .first()
    )
    if invite is None:
        raise TokenInvalidError()
    if invite.status == Status.CLAIMED:
        if invite.claimed_by_id != user.pk:
            raise AlreadyClaimedError()
        if invite.hold.status != RegistrationHold.Status.CONFIRMED:
            raise InviteExpiredError()
        return invite.hold_id
    if invite.status == Status.EXPIRED:
        raise InviteExpiredError()
    if not invite.is_current or invite.status != Status.SENT:
        raise TokenInvalidError()

    hold = invite.hold
    if (invite.expires_at is not None and invite.expires_at <= now) or (
        hold.expires_at is not None and hold.expires_at <= now
    ):
        raise InviteExpiredError()
    if normalize_email(user.email) != invite.email_normalized:
        raise EmailMismatchError()
    if has_active_registration(invite.edition_id, invite.email_normalized, exclude_hold_pk=hold.pk):
        raise AlreadyRegisteredError()

    invite_state.apply(invite, InviteEvent.CLAIM, now=now, claimed_at=now, claimed_by=user)
    capacity_ledger.confirm(hold, buyer=user, now=now)
    logger.info("invite_claimed", invite_id=str(invite.pk), hold_id=str(hold.pk), user_id=str(user.pk))
    return hold.pk


@transaction.atomic
def complete_registration(hold: RegistrationHold, *, now: datetime | None = None) -> RegistrationHold:
    """Make a claimed registration permanent.

    Completing an already finalized registration returns it unchanged.

    Raises:
        InviteExpiredError: If the claim lapsed before it was completed.
        InvalidInviteTransitionError: If the hold was never claimed or was cancelled.
    """
    now = now or timezone.now()
    hold = RegistrationHold.objects.select_for_update().get(pk=hold.pk)
    if hold.status == RegistrationHold.Status.CONFIRMED:
        if hold.finalized_at is not None:
            return hold
        if hold.expires_at is not None and hold.expires_at <= now:
            raise InviteExpiredError()
    elif hold.status == RegistrationHold.Status.EXPIRED:
        raise InviteExpiredError()
    else:
        raise InvalidInviteTransitionError(
            hold.status, "complete", detail="Only a claimed registration can be completed."
        )
    return capacity_ledger.finalize(hold, now=now)
