"""Delivery of invites to participants.

The engine only decides *when* an invite must be delivered. Transport is the
job of an ``InviteNotifier`` implementation, selected with the
``REGISTRATION_INVITE_NOTIFIER`` setting and invoked from a Celery task after
the sending transaction commits.
"""

from abc import ABC, abstractmethod
from smtplib import SMTPException
from urllib.parse import urlencode
from uuid import UUID

import structlog
from django.conf import settings
from django.template.loader import render_to_string
from django.utils.module_loading import import_string

from common.tasks import send_email
from common.utils import mask_email
from registrations.models import RegistrationInvite

from .tokens import derive_claim_token

logger = structlog.get_logger(__name__)


class InviteNotifier(ABC):
    """Transport for invite notifications."""

    @abstractmethod
    def send(self, invite_id: UUID, recipient_email: str) -> bool:
        """Deliver the invite.

        Args:
            invite_id: The invite to deliver. Implementations derive the claim
                token from it; it is never passed around in cleartext.
            recipient_email: Where to deliver it.

        Returns:
            True if the notification was handed over successfully.
        """


class EmailInviteNotifier(InviteNotifier):
    """Sends the claim link by email."""

    def send(self, invite_id: UUID, recipient_email: str) -> bool:
        invite = RegistrationInvite.objects.select_related("edition", "hold__distance", "created_by").get(
            pk=invite_id
        )
        context = {
            "edition_name": invite.edition.name,
            "distance_label": invite.hold.distance.label,
            "organizer_name": invite.created_by.get_full_name() if invite.created_by else "",
            "claim_url": build_claim_url(derive_claim_token(invite.pk)),
            "expires_at": invite.expires_at,
            "timezone": settings.TIME_ZONE,
        }
        try:
            send_email(
                to=recipient_email,
                subject=f"Your registration for {invite.edition.name}",
                body=render_to_string("registrations/emails/invite.txt", context),
                html_body=render_to_string("registrations/emails/invite.html", context),
                reply_to=invite.created_by.email if invite.created_by else None,
                headers={"X-Roster-Invite-ID": str(invite.pk)},
            )
        except (SMTPException, OSError):
            logger.warning(
                "invite_email_failed",
                invite_id=str(invite_id),
                recipient=mask_email(recipient_email),
                exc_info=True,
            )
            return False
        return True


def build_claim_url(claim_token: str) -> str:
    base = settings.FRONTEND_BASE_URL.rstrip("/")
    return f"{base}/group-registrations/claim?{urlencode({'token': claim_token})}"


def get_notifier() -> InviteNotifier:
    notifier_class: type[InviteNotifier] = import_string(settings.REGISTRATION_INVITE_NOTIFIER)
    return notifier_class()


def deliver_invite(invite_id: UUID | str) -> bool | None:
    """Hand an invite to the configured notifier.

    Returns:
        The notifier's result, or None when the invite is no longer deliverable
        (rotated, cancelled, expired or claimed since it was queued).
    """
    invite = RegistrationInvite.objects.filter(pk=invite_id).first()
    if invite is None or not invite.is_current or invite.status != RegistrationInvite.Status.SENT:
        logger.info("invite_delivery_skipped", invite_id=str(invite_id))
        return None
    delivered = get_notifier().send(invite.pk, invite.email)
    logger.info(
        "invite_delivery_attempted",
        invite_id=str(invite.pk),
        token_prefix=invite.token_prefix,
        recipient=mask_email(invite.email),
        delivered=delivered,
    )
    return delivered
