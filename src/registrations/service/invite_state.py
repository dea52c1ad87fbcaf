"""Transition table and guarded transitions for registration invites.

Every transition is applied as a conditional UPDATE on the invite's expected
prior status. If another writer got there first, nothing is updated and the
caller gets a ``ConcurrentModificationError`` instead of overwriting.
"""

import typing as t
from datetime import datetime
from enum import StrEnum

import structlog
from django.db.models import F, Q
from django.utils import timezone

from registrations.exceptions import ConcurrentModificationError, InvalidInviteTransitionError
from registrations.models import RegistrationInvite

logger = structlog.get_logger(__name__)

Status = RegistrationInvite.Status


class InviteEvent(StrEnum):
    SEND = "send"
    CLAIM = "claim"
    CANCEL = "cancel"
    EXPIRE = "expire"
    SUPERSEDE = "supersede"


TRANSITIONS: dict[tuple[Status, InviteEvent], Status] = {
    (Status.DRAFT, InviteEvent.SEND): Status.SENT,
    (Status.SENT, InviteEvent.SEND): Status.SENT,
    (Status.SENT, InviteEvent.CLAIM): Status.CLAIMED,
    (Status.DRAFT, InviteEvent.CANCEL): Status.CANCELLED,
    (Status.SENT, InviteEvent.CANCEL): Status.CANCELLED,
    (Status.DRAFT, InviteEvent.EXPIRE): Status.EXPIRED,
    (Status.SENT, InviteEvent.EXPIRE): Status.EXPIRED,
    (Status.DRAFT, InviteEvent.SUPERSEDE): Status.SUPERSEDED,
    (Status.SENT, InviteEvent.SUPERSEDE): Status.SUPERSEDED,
}


def next_status(status: str, event: InviteEvent) -> Status:
    """Look up the status an event leads to.

    Raises:
        InvalidInviteTransitionError: If the pair is not in the transition table.
    """
    try:
        return TRANSITIONS[(Status(status), event)]
    except KeyError:
        raise InvalidInviteTransitionError(status, event.value) from None


def apply(
    invite: RegistrationInvite, event: InviteEvent, *, now: datetime | None = None, **changes: t.Any
) -> RegistrationInvite:
    """Apply ``event`` to ``invite`` and persist the result.

    Only current invites can transition. ``send`` bumps the send counter and
    stamps ``last_sent_at``; ``claim`` additionally requires the invite to be
    unexpired; ``supersede`` clears ``is_current``.

    Args:
        invite: The invite, as last read by the caller.
        event: The event to apply.
        now: Reference time.
        **changes: Extra field values written in the same update.

    Returns:
        The same invite instance, updated in place.

    Raises:
        InvalidInviteTransitionError: If the event is not allowed from the invite's status.
        ConcurrentModificationError: If the stored invite no longer matches what the caller read.
    """
    now = now or timezone.now()
    target = next_status(invite.status, event)

    guard = Q(pk=invite.pk, status=invite.status, is_current=True)
    fields: dict[str, t.Any] = {"status": target, "updated_at": now, **changes}
    if event == InviteEvent.SEND:
        fields["send_count"] = F("send_count") + 1
        fields["last_sent_at"] = now
    elif event == InviteEvent.CLAIM:
        guard &= Q(expires_at__isnull=True) | Q(expires_at__gt=now)
    elif event == InviteEvent.SUPERSEDE:
        fields["is_current"] = False

    if not RegistrationInvite.objects.filter(guard).update(**fields):
        logger.info(
            "invite_transition_conflict",
            invite_id=str(invite.pk),
            expected_status=invite.status,
            invite_event=event.value,
        )
        raise ConcurrentModificationError()

    previous = invite.status
    for name, value in fields.items():
        if name != "send_count":
            setattr(invite, name, value)
    if event == InviteEvent.SEND:
        invite.send_count += 1
    logger.info(
        "invite_transitioned",
        invite_id=str(invite.pk),
        from_status=previous,
        to_status=target,
        invite_event=event.value,
    )
    return invite


def retire(invite: RegistrationInvite, *, now: datetime | None = None) -> RegistrationInvite:
    """Stop an already terminal invite from being its row's current invite.

    Used when a replacement is issued for an expired invite.
    """
    now = now or timezone.now()
    updated = RegistrationInvite.objects.filter(pk=invite.pk, status=invite.status, is_current=True).update(
        is_current=False, updated_at=now
    )
    if not updated:
        raise ConcurrentModificationError()
    invite.is_current = False
    return invite
