"""Atomic reservation and release of distance capacity.

Counters are only ever changed through single conditional UPDATE statements,
so the check for remaining capacity and its consumption cannot be separated by
a concurrent writer. Hold status changes are guarded the same way and gate the
counter changes, which makes release idempotent.
"""

import typing as t
from datetime import datetime, timedelta

import structlog
from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.db import OperationalError, transaction
from django.db.models import F, Q, Sum
from django.utils import timezone
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from registrations.exceptions import CapacityExhaustedError, CapacityReleaseError, ConcurrentModificationError
from registrations.models import Distance, EventEdition, RegistrationHold

logger = structlog.get_logger(__name__)

CountedAgainst = RegistrationHold.CountedAgainst


def _counter_for(distance: Distance) -> CountedAgainst:
    """Pick the counter a new reservation against ``distance`` consumes.

    Reads the edition's pool size from the database rather than trusting the
    in-memory instance.
    """
    if distance.capacity_scope != Distance.CapacityScope.SHARED_POOL:
        return CountedAgainst.DISTANCE
    shared_capacity = EventEdition.objects.values_list("shared_capacity", flat=True).get(pk=distance.edition_id)
    return CountedAgainst.DISTANCE if shared_capacity is None else CountedAgainst.SHARED_POOL


def _consume(distance: Distance, counted_against: CountedAgainst, count: int) -> bool:
    if counted_against == CountedAgainst.SHARED_POOL:
        return bool(
            EventEdition.objects.filter(
                pk=distance.edition_id,
                shared_capacity__isnull=False,
                shared_reserved_count__lte=F("shared_capacity") - count,
            ).update(shared_reserved_count=F("shared_reserved_count") + count)
        )
    return bool(
        Distance.objects.filter(pk=distance.pk)
        .filter(Q(capacity__isnull=True) | Q(reserved_count__lte=F("capacity") - count))
        .update(reserved_count=F("reserved_count") + count)
    )


def _give_back(hold: RegistrationHold) -> None:
    """Return a hold's seats to the counter it was taken from."""
    if hold.counted_against == CountedAgainst.SHARED_POOL:
        updated = EventEdition.objects.filter(
            pk=hold.edition_id, shared_reserved_count__gte=hold.quantity
        ).update(shared_reserved_count=F("shared_reserved_count") - hold.quantity)
    else:
        updated = Distance.objects.filter(pk=hold.distance_id, reserved_count__gte=hold.quantity).update(
            reserved_count=F("reserved_count") - hold.quantity
        )
    if not updated:
        # the recount task repairs this
        logger.warning(
            "capacity_counter_underflow",
            hold_id=str(hold.pk),
            distance_id=str(hold.distance_id),
            counted_against=hold.counted_against,
        )


@transaction.atomic
def reserve(
    distance: Distance,
    *,
    count: int = 1,
    buyer: AbstractUser | None = None,
    ttl: timedelta | None = None,
    now: datetime | None = None,
) -> RegistrationHold:
    """Reserve ``count`` seats and create the pending hold that owns them.

    Args:
        distance: The distance to reserve against.
        count: Number of seats.
        buyer: Optional owner of the hold.
        ttl: How long the hold stays pending. Defaults to ``INVITE_HOLD_TTL``.
        now: Reference time.

    Returns:
        The new pending hold.

    Raises:
        CapacityExhaustedError: If the counter has fewer than ``count`` free seats.
    """
    if count < 1:
        raise ValueError("count must be positive")
    now = now or timezone.now()
    ttl = settings.INVITE_HOLD_TTL if ttl is None else ttl

    counted_against = _counter_for(distance)
    if not _consume(distance, counted_against, count):
        logger.info(
            "capacity_exhausted",
            distance_id=str(distance.pk),
            counted_against=counted_against,
            requested=count,
        )
        raise CapacityExhaustedError()

    hold = RegistrationHold.objects.create(
        edition_id=distance.edition_id,
        distance=distance,
        status=RegistrationHold.Status.PENDING,
        quantity=count,
        counted_against=counted_against,
        expires_at=now + ttl,
        buyer=buyer,
    )
    logger.info(
        "capacity_reserved",
        hold_id=str(hold.pk),
        distance_id=str(distance.pk),
        counted_against=counted_against,
        quantity=count,
    )
    return hold


def _end_pending(
    hold: RegistrationHold, *, target: RegistrationHold.Status, now: datetime, extra: Q | None = None
) -> bool:
    guard = Q(pk=hold.pk, status=RegistrationHold.Status.PENDING)
    if extra is not None:
        guard &= extra
    updated = RegistrationHold.objects.filter(guard).update(status=target, released_at=now, updated_at=now)
    if not updated:
        return False
    _give_back(hold)
    hold.status = target
    hold.released_at = now
    return True


@transaction.atomic
def release(hold: RegistrationHold, *, now: datetime | None = None) -> bool:
    """Cancel a pending hold and return its seats.

    Releasing a hold that is no longer pending (already released, expired or
    confirmed) is a no-op.

    Returns:
        True if this call released the capacity.
    """
    now = now or timezone.now()
    released = _end_pending(hold, target=RegistrationHold.Status.CANCELLED, now=now)
    if released:
        logger.info("hold_released", hold_id=str(hold.pk), quantity=hold.quantity)
    else:
        logger.debug("hold_release_noop", hold_id=str(hold.pk))
    return released


@transaction.atomic
def expire(hold: RegistrationHold, *, now: datetime) -> bool:
    """Expire an overdue pending hold and return its seats.

    Returns:
        True if this call expired the hold, False if it was no longer pending or not yet due.
    """
    expired = _end_pending(
        hold,
        target=RegistrationHold.Status.EXPIRED,
        now=now,
        extra=Q(expires_at__isnull=False, expires_at__lte=now),
    )
    if expired:
        logger.info("hold_expired", hold_id=str(hold.pk), quantity=hold.quantity)
    return expired


@transaction.atomic
def lapse(hold: RegistrationHold, *, now: datetime) -> bool:
    """Expire a confirmed hold whose registration was not completed in time, and return its seats.

    Finalized holds and holds that are not yet due are left alone.

    Returns:
        True if this call released the capacity.
    """
    updated = RegistrationHold.objects.filter(
        pk=hold.pk,
        status=RegistrationHold.Status.CONFIRMED,
        finalized_at__isnull=True,
        expires_at__isnull=False,
        expires_at__lte=now,
    ).update(status=RegistrationHold.Status.EXPIRED, released_at=now, updated_at=now)
    if not updated:
        return False
    _give_back(hold)
    hold.status = RegistrationHold.Status.EXPIRED
    hold.released_at = now
    logger.info("claimed_hold_lapsed", hold_id=str(hold.pk), quantity=hold.quantity)
    return True


@retry(
    retry=retry_if_exception_type(OperationalError),
    wait=wait_random_exponential(multiplier=0.05, max=1),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _release_with_retry(hold: RegistrationHold, now: datetime) -> bool:
    return release(hold, now=now)


def release_or_escalate(hold: RegistrationHold, *, now: datetime | None = None) -> bool:
    """Release a hold as part of a cancellation.

    Transient database errors are retried. If the release still cannot be
    committed the cancellation must not report success.

    Raises:
        CapacityReleaseError: When every attempt failed.
    """
    now = now or timezone.now()
    attempts = settings.CAPACITY_RELEASE_ATTEMPTS
    try:
        return t.cast(bool, _release_with_retry.retry_with(stop=stop_after_attempt(attempts))(hold, now))
    except OperationalError as e:
        logger.error("capacity_release_failed", hold_id=str(hold.pk), attempts=attempts, exc_info=True)
        raise CapacityReleaseError() from e


def confirm(hold: RegistrationHold, *, buyer: AbstractUser | None, now: datetime | None = None) -> RegistrationHold:
    """Confirm a pending, unexpired hold for ``buyer``.

    The hold gets the claimed-hold completion deadline.

    Raises:
        ConcurrentModificationError: If the hold is no longer pending or already past its deadline.
    """
    now = now or timezone.now()
    expires_at = now + settings.CLAIMED_HOLD_TTL
    updated = RegistrationHold.objects.filter(
        Q(expires_at__isnull=True) | Q(expires_at__gt=now),
        pk=hold.pk,
        status=RegistrationHold.Status.PENDING,
    ).update(
        status=RegistrationHold.Status.CONFIRMED,
        buyer=buyer,
        confirmed_at=now,
        expires_at=expires_at,
        updated_at=now,
    )
    if not updated:
        raise ConcurrentModificationError()
    hold.status = RegistrationHold.Status.CONFIRMED
    hold.buyer = buyer
    hold.confirmed_at = now
    hold.expires_at = expires_at
    logger.info("hold_confirmed", hold_id=str(hold.pk))
    return hold


def finalize(hold: RegistrationHold, *, now: datetime | None = None) -> RegistrationHold:
    """Mark a confirmed hold as permanently registered. Its deadline is cleared."""
    now = now or timezone.now()
    updated = RegistrationHold.objects.filter(
        pk=hold.pk, status=RegistrationHold.Status.CONFIRMED, finalized_at__isnull=True
    ).update(finalized_at=now, expires_at=None, updated_at=now)
    if not updated:
        raise ConcurrentModificationError()
    hold.finalized_at = now
    hold.expires_at = None
    logger.info("hold_finalized", hold_id=str(hold.pk))
    return hold


def reschedule(hold: RegistrationHold, *, expires_at: datetime, now: datetime | None = None) -> RegistrationHold:
    """Move the deadline of a confirmed, not yet finalized hold.

    The update is guarded by the deadline the caller computed from, so two
    concurrent extensions cannot both apply on top of the same value.
    """
    now = now or timezone.now()
    updated = RegistrationHold.objects.filter(
        pk=hold.pk,
        status=RegistrationHold.Status.CONFIRMED,
        finalized_at__isnull=True,
        expires_at=hold.expires_at,
    ).update(expires_at=expires_at, updated_at=now)
    if not updated:
        raise ConcurrentModificationError()
    hold.expires_at = expires_at
    return hold


@transaction.atomic
def recount_reserved_capacity(edition: EventEdition) -> int:
    """Recompute an edition's counters from its active holds.

    Locks the edition and its distances for the duration of the recount.

    Returns:
        The number of counters that were corrected.
    """
    edition = EventEdition.objects.select_for_update().get(pk=edition.pk)
    distances = list(Distance.objects.select_for_update().filter(edition=edition))
    active = RegistrationHold.objects.active().filter(edition=edition)

    per_distance = dict(
        active.filter(counted_against=CountedAgainst.DISTANCE)
        .values("distance")
        .annotate(total=Sum("quantity"))
        .values_list("distance", "total")
    )
    shared_total = (
        active.filter(counted_against=CountedAgainst.SHARED_POOL).aggregate(total=Sum("quantity"))["total"] or 0
    )

    corrected = 0
    for distance in distances:
        actual = per_distance.get(distance.pk, 0)
        if actual == distance.reserved_count:
            continue
        if distance.capacity is not None and actual > distance.capacity:
            logger.error(
                "capacity_overcommitted", distance_id=str(distance.pk), capacity=distance.capacity, actual=actual
            )
            continue
        logger.warning(
            "capacity_drift_corrected",
            distance_id=str(distance.pk),
            stored=distance.reserved_count,
            actual=actual,
        )
        Distance.objects.filter(pk=distance.pk).update(reserved_count=actual)
        corrected += 1

    if shared_total != edition.shared_reserved_count:
        if edition.shared_capacity is not None and shared_total > edition.shared_capacity:
            logger.error(
                "capacity_overcommitted",
                edition_id=str(edition.pk),
                capacity=edition.shared_capacity,
                actual=shared_total,
            )
        else:
            logger.warning(
                "capacity_drift_corrected",
                edition_id=str(edition.pk),
                stored=edition.shared_reserved_count,
                actual=shared_total,
            )
            EventEdition.objects.filter(pk=edition.pk).update(shared_reserved_count=shared_total)
            corrected += 1
    return corrected
