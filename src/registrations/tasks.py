"""Celery tasks for group registrations.

- Delivering invites through the configured notifier
- Sweeping overdue holds
- Releasing lapsed claims
- Reconciling capacity counters
"""

import structlog
from celery import shared_task

from .models import EventEdition
from .service import capacity_ledger, expiry_service
from .service.notifications import deliver_invite

logger = structlog.get_logger(__name__)


class InviteDeliveryError(Exception):
    """Raised when the notifier reports a failed delivery, so the task is retried."""


@shared_task(
    name="registrations.send_registration_invite",
    autoretry_for=(InviteDeliveryError,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=5,
)
def send_registration_invite(invite_id: str) -> bool | None:
    """Deliver one invite. Failed deliveries are retried with backoff."""
    delivered = deliver_invite(invite_id)
    if delivered is False:
        raise InviteDeliveryError(invite_id)
    return delivered


@shared_task(name="registrations.sweep_expired_holds")
def sweep_expired_holds() -> dict[str, int]:
    """Expire overdue pending holds and their open invites."""
    result = expiry_service.sweep()
    return {"holds_expired": result.holds_expired, "invites_expired": result.invites_expired}


@shared_task(name="registrations.release_lapsed_claims")
def release_lapsed_claims() -> int:
    """Release claimed registrations that were not completed before their deadline."""
    return expiry_service.release_lapsed_claims()


@shared_task(name="registrations.recount_reserved_capacity")
def recount_reserved_capacity() -> int:
    """Recompute capacity counters of every edition from its active holds.

    Returns:
        Total number of corrected counters.
    """
    corrected = 0
    for edition in EventEdition.objects.all().iterator():
        corrected += capacity_ledger.recount_reserved_capacity(edition)
    if corrected:
        logger.warning("capacity_recount_corrected", counters=corrected)
    return corrected
