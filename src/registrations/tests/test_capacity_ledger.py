"""Tests for the capacity ledger."""

import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from django.db import OperationalError, connection
from django.test import override_settings
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from registrations.exceptions import CapacityExhaustedError, CapacityReleaseError, ConcurrentModificationError
from registrations.models import Distance, EventEdition, RegistrationHold
from registrations.service import capacity_ledger

pytestmark = pytest.mark.django_db


class TestReserve:
    def test_reserve_creates_pending_hold_and_consumes_capacity(self, distance: Distance, now: datetime) -> None:
        hold = capacity_ledger.reserve(distance, now=now)

        distance.refresh_from_db()
        assert distance.reserved_count == 1
        assert hold.status == RegistrationHold.Status.PENDING
        assert hold.counted_against == RegistrationHold.CountedAgainst.DISTANCE
        assert hold.quantity == 1
        assert hold.expires_at is not None

    @override_settings(INVITE_HOLD_TTL=timedelta(hours=5))
    def test_reserve_uses_configured_ttl(self, distance: Distance, now: datetime) -> None:
        hold = capacity_ledger.reserve(distance, now=now)
        assert hold.expires_at == now + timedelta(hours=5)

    def test_reserve_fails_when_exhausted(self, edition: EventEdition) -> None:
        distance = Distance.objects.create(edition=edition, label="Ultra", capacity=1)
        capacity_ledger.reserve(distance)

        with pytest.raises(CapacityExhaustedError) as exc_info:
            capacity_ledger.reserve(distance)

        assert exc_info.value.code == "CAPACITY_EXHAUSTED"
        distance.refresh_from_db()
        assert distance.reserved_count == 1
        assert RegistrationHold.objects.filter(distance=distance).count() == 1

    def test_reserve_with_stale_instance_cannot_overbook(self, edition: EventEdition) -> None:
        """The in-memory counter is never trusted."""
        distance = Distance.objects.create(edition=edition, label="Ultra", capacity=1)
        stale = Distance.objects.get(pk=distance.pk)
        capacity_ledger.reserve(distance)

        assert stale.reserved_count == 0
        with pytest.raises(CapacityExhaustedError):
            capacity_ledger.reserve(stale)

    def test_reserve_more_than_remaining(self, edition: EventEdition) -> None:
        distance = Distance.objects.create(edition=edition, label="5K", capacity=3)
        capacity_ledger.reserve(distance, count=2)

        with pytest.raises(CapacityExhaustedError):
            capacity_ledger.reserve(distance, count=2)

        hold = capacity_ledger.reserve(distance, count=1)
        assert hold.quantity == 1

    def test_unlimited_distance(self, edition: EventEdition) -> None:
        distance = Distance.objects.create(edition=edition, label="Fun run", capacity=None)
        for _ in range(5):
            capacity_ledger.reserve(distance)
        distance.refresh_from_db()
        assert distance.reserved_count == 5
        assert distance.remaining is None

    def test_reserve_rejects_non_positive_count(self, distance: Distance) -> None:
        with pytest.raises(ValueError):
            capacity_ledger.reserve(distance, count=0)


class TestSharedPool:
    @pytest.fixture
    def pooled_edition(self) -> EventEdition:
        return EventEdition.objects.create(name="Trail Fest", slug="trail-fest", shared_capacity=2)

    def test_shared_pool_distances_draw_from_the_edition(self, pooled_edition: EventEdition) -> None:
        short = Distance.objects.create(
            edition=pooled_edition, label="15K", capacity=100, capacity_scope=Distance.CapacityScope.SHARED_POOL
        )
        long = Distance.objects.create(
            edition=pooled_edition, label="50K", capacity=100, capacity_scope=Distance.CapacityScope.SHARED_POOL
        )

        first = capacity_ledger.reserve(short)
        capacity_ledger.reserve(long)
        with pytest.raises(CapacityExhaustedError):
            capacity_ledger.reserve(short)

        pooled_edition.refresh_from_db()
        short.refresh_from_db()
        assert first.counted_against == RegistrationHold.CountedAgainst.SHARED_POOL
        assert pooled_edition.shared_reserved_count == 2
        assert short.reserved_count == 0
        assert short.remaining == 0

    def test_release_returns_to_the_counter_it_came_from(self, pooled_edition: EventEdition) -> None:
        distance = Distance.objects.create(
            edition=pooled_edition, label="15K", capacity_scope=Distance.CapacityScope.SHARED_POOL
        )
        hold = capacity_ledger.reserve(distance)

        # the edition drops its pool; the hold still refunds the pool counter
        EventEdition.objects.filter(pk=pooled_edition.pk).update(shared_capacity=None)
        assert capacity_ledger.release(hold) is True

        pooled_edition.refresh_from_db()
        distance.refresh_from_db()
        assert pooled_edition.shared_reserved_count == 0
        assert distance.reserved_count == 0

    def test_shared_scope_without_pool_uses_distance_counter(self, edition: EventEdition) -> None:
        distance = Distance.objects.create(
            edition=edition, label="15K", capacity=1, capacity_scope=Distance.CapacityScope.SHARED_POOL
        )
        hold = capacity_ledger.reserve(distance)
        assert hold.counted_against == RegistrationHold.CountedAgainst.DISTANCE
        with pytest.raises(CapacityExhaustedError):
            capacity_ledger.reserve(distance)


class TestRelease:
    def test_release_is_idempotent(self, distance: Distance) -> None:
        hold = capacity_ledger.reserve(distance)

        assert capacity_ledger.release(hold) is True
        assert capacity_ledger.release(hold) is False
        assert capacity_ledger.release(RegistrationHold.objects.get(pk=hold.pk)) is False

        distance.refresh_from_db()
        hold.refresh_from_db()
        assert distance.reserved_count == 0
        assert hold.status == RegistrationHold.Status.CANCELLED
        assert hold.released_at is not None

    def test_release_of_confirmed_hold_is_noop(self, distance: Distance) -> None:
        hold = capacity_ledger.reserve(distance)
        capacity_ledger.confirm(hold, buyer=None)

        assert capacity_ledger.release(hold) is False
        distance.refresh_from_db()
        assert distance.reserved_count == 1

    def test_release_or_escalate_retries_transient_errors(self, distance: Distance) -> None:
        hold = capacity_ledger.reserve(distance)
        original = capacity_ledger.release
        calls = {"n": 0}

        def flaky(*args: object, **kwargs: object) -> bool:
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("database is locked")
            return original(*args, **kwargs)  # type: ignore[arg-type]

        with patch("registrations.service.capacity_ledger.release", side_effect=flaky):
            assert capacity_ledger.release_or_escalate(hold) is True

        assert calls["n"] == 2
        distance.refresh_from_db()
        assert distance.reserved_count == 0

    @override_settings(CAPACITY_RELEASE_ATTEMPTS=2)
    def test_release_or_escalate_raises_after_all_attempts(self, distance: Distance) -> None:
        hold = capacity_ledger.reserve(distance)

        with patch(
            "registrations.service.capacity_ledger.release", side_effect=OperationalError("database is locked")
        ) as release:
            with pytest.raises(CapacityReleaseError):
                capacity_ledger.release_or_escalate(hold)

        assert release.call_count == 2


class TestExpire:
    def test_expire_only_when_due(self, distance: Distance, now: datetime) -> None:
        hold = capacity_ledger.reserve(distance, now=now, ttl=timedelta(hours=1))

        assert capacity_ledger.expire(hold, now=now + timedelta(minutes=59)) is False
        assert capacity_ledger.expire(hold, now=now + timedelta(hours=1)) is True
        assert capacity_ledger.expire(hold, now=now + timedelta(hours=2)) is False

        distance.refresh_from_db()
        hold.refresh_from_db()
        assert hold.status == RegistrationHold.Status.EXPIRED
        assert distance.reserved_count == 0

    def test_release_after_expire_does_not_double_count(self, distance: Distance, now: datetime) -> None:
        capacity_ledger.reserve(distance, now=now)
        hold = capacity_ledger.reserve(distance, now=now, ttl=timedelta(minutes=1))
        capacity_ledger.expire(hold, now=now + timedelta(minutes=5))

        assert capacity_ledger.release(hold) is False
        distance.refresh_from_db()
        assert distance.reserved_count == 1


class TestConfirmAndFinalize:
    @override_settings(CLAIMED_HOLD_TTL=timedelta(hours=24))
    def test_confirm_sets_claimed_deadline(self, distance: Distance, user: object, now: datetime) -> None:
        hold = capacity_ledger.reserve(distance, now=now)

        capacity_ledger.confirm(hold, buyer=user, now=now)  # type: ignore[arg-type]

        hold.refresh_from_db()
        assert hold.status == RegistrationHold.Status.CONFIRMED
        assert hold.buyer == user
        assert hold.confirmed_at == now
        assert hold.expires_at == now + timedelta(hours=24)

    def test_confirm_refuses_expired_deadline(self, distance: Distance, now: datetime) -> None:
        hold = capacity_ledger.reserve(distance, now=now, ttl=timedelta(minutes=1))
        with pytest.raises(ConcurrentModificationError):
            capacity_ledger.confirm(hold, buyer=None, now=now + timedelta(minutes=1))

    def test_confirm_refuses_released_hold(self, distance: Distance) -> None:
        hold = capacity_ledger.reserve(distance)
        capacity_ledger.release(hold)
        with pytest.raises(ConcurrentModificationError):
            capacity_ledger.confirm(hold, buyer=None)

    def test_finalize_clears_deadline(self, distance: Distance) -> None:
        hold = capacity_ledger.reserve(distance)
        capacity_ledger.confirm(hold, buyer=None)

        capacity_ledger.finalize(hold)

        hold.refresh_from_db()
        assert hold.finalized_at is not None
        assert hold.expires_at is None
        with pytest.raises(ConcurrentModificationError):
            capacity_ledger.finalize(hold)

    def test_reschedule_is_guarded_by_previous_deadline(self, distance: Distance, now: datetime) -> None:
        hold = capacity_ledger.reserve(distance, now=now)
        capacity_ledger.confirm(hold, buyer=None, now=now)
        stale = RegistrationHold.objects.get(pk=hold.pk)

        capacity_ledger.reschedule(hold, expires_at=now + timedelta(days=3), now=now)

        with pytest.raises(ConcurrentModificationError):
            capacity_ledger.reschedule(stale, expires_at=now + timedelta(days=5), now=now)
        hold.refresh_from_db()
        assert hold.expires_at == now + timedelta(days=3)


class TestLapse:
    @pytest.fixture
    def confirmed_hold(self, distance: Distance, now: datetime) -> RegistrationHold:
        hold = capacity_ledger.reserve(distance, now=now)
        return capacity_ledger.confirm(hold, buyer=None, now=now)

    def test_lapse_releases_overdue_confirmed_hold(
        self, confirmed_hold: RegistrationHold, distance: Distance
    ) -> None:
        assert confirmed_hold.expires_at is not None
        later = confirmed_hold.expires_at + timedelta(seconds=1)

        assert capacity_ledger.lapse(confirmed_hold, now=later) is True
        assert capacity_ledger.lapse(confirmed_hold, now=later) is False

        confirmed_hold.refresh_from_db()
        distance.refresh_from_db()
        assert confirmed_hold.status == RegistrationHold.Status.EXPIRED
        assert distance.reserved_count == 0

    def test_lapse_waits_for_deadline(self, confirmed_hold: RegistrationHold, now: datetime) -> None:
        assert capacity_ledger.lapse(confirmed_hold, now=now) is False
        confirmed_hold.refresh_from_db()
        assert confirmed_hold.status == RegistrationHold.Status.CONFIRMED

    def test_finalized_hold_never_lapses(
        self, confirmed_hold: RegistrationHold, distance: Distance, now: datetime
    ) -> None:
        capacity_ledger.finalize(confirmed_hold, now=now)

        assert capacity_ledger.lapse(confirmed_hold, now=now + timedelta(days=365)) is False
        distance.refresh_from_db()
        assert distance.reserved_count == 1

    def test_pending_hold_does_not_lapse(self, distance: Distance, now: datetime) -> None:
        hold = capacity_ledger.reserve(distance, now=now, ttl=timedelta(minutes=1))

        assert capacity_ledger.lapse(hold, now=now + timedelta(minutes=5)) is False
        hold.refresh_from_db()
        assert hold.status == RegistrationHold.Status.PENDING


class TestRecount:
    def test_recount_repairs_drift(self, distance: Distance) -> None:
        capacity_ledger.reserve(distance)
        confirmed = capacity_ledger.reserve(distance)
        capacity_ledger.confirm(confirmed, buyer=None)
        released = capacity_ledger.reserve(distance)
        capacity_ledger.release(released)
        Distance.objects.filter(pk=distance.pk).update(reserved_count=7)

        corrected = capacity_ledger.recount_reserved_capacity(distance.edition)

        distance.refresh_from_db()
        assert corrected == 1
        assert distance.reserved_count == 2

    def test_recount_is_noop_when_consistent(self, distance: Distance) -> None:
        capacity_ledger.reserve(distance)
        assert capacity_ledger.recount_reserved_capacity(distance.edition) == 0

    def test_recount_repairs_shared_pool(self) -> None:
        edition = EventEdition.objects.create(name="Trail Fest", slug="trail-fest", shared_capacity=5)
        distance = Distance.objects.create(
            edition=edition, label="15K", capacity_scope=Distance.CapacityScope.SHARED_POOL
        )
        capacity_ledger.reserve(distance)
        EventEdition.objects.filter(pk=edition.pk).update(shared_reserved_count=0)

        assert capacity_ledger.recount_reserved_capacity(edition) == 1
        edition.refresh_from_db()
        assert edition.shared_reserved_count == 1


@pytest.mark.django_db(transaction=True)
def test_concurrent_reservations_for_last_seat_have_one_winner(edition: EventEdition) -> None:
    distance = Distance.objects.create(edition=edition, label="Ultra", capacity=2)
    capacity_ledger.reserve(distance)
    barrier = threading.Barrier(2)
    holds: list[RegistrationHold] = []
    exhausted: list[CapacityExhaustedError] = []
    errors: list[Exception] = []

    def reserve_last_seat() -> None:
        try:
            barrier.wait(timeout=10)
            # SQLite reports a concurrent writer as a locked table instead of blocking
            for attempt in Retrying(
                retry=retry_if_exception_type(OperationalError),
                wait=wait_fixed(0.02),
                stop=stop_after_attempt(100),
                reraise=True,
            ):
                with attempt:
                    holds.append(capacity_ledger.reserve(Distance.objects.get(pk=distance.pk)))
        except CapacityExhaustedError as e:
            exhausted.append(e)
        except Exception as e:
            errors.append(e)
        finally:
            connection.close()

    threads = [threading.Thread(target=reserve_last_seat) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(holds) == 1
    assert len(exhausted) == 1
    distance.refresh_from_db()
    assert distance.reserved_count == 2
    assert RegistrationHold.objects.filter(distance=distance).count() == 2
