import typing as t
from datetime import datetime

from django.conf import settings
from django.db import models

from common.models import TimeStampedModel


class RegistrationHoldQuerySet(models.QuerySet["RegistrationHold"]):
    def active(self) -> t.Self:
        """Holds that currently consume capacity."""
        return self.filter(status__in=RegistrationHold.ACTIVE_STATUSES)

    def overdue(self, now: datetime) -> t.Self:
        """Pending holds whose deadline has passed."""
        return self.filter(status=RegistrationHold.Status.PENDING, expires_at__isnull=False, expires_at__lte=now)

    def lapsed(self, now: datetime) -> t.Self:
        """Confirmed holds that were never finalized and whose completion deadline has passed."""
        return self.filter(
            status=RegistrationHold.Status.CONFIRMED,
            finalized_at__isnull=True,
            expires_at__isnull=False,
            expires_at__lte=now,
        )


class RegistrationHoldManager(models.Manager["RegistrationHold"]):
    def get_queryset(self) -> RegistrationHoldQuerySet:
        return RegistrationHoldQuerySet(self.model, using=self._db)

    def active(self) -> RegistrationHoldQuerySet:
        return self.get_queryset().active()

    def overdue(self, now: datetime) -> RegistrationHoldQuerySet:
        return self.get_queryset().overdue(now)

    def lapsed(self, now: datetime) -> RegistrationHoldQuerySet:
        return self.get_queryset().lapsed(now)


class RegistrationHold(TimeStampedModel):
    """A capacity-consuming reservation tied to one participant row."""

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        EXPIRED = "expired"
        CANCELLED = "cancelled"

    class CountedAgainst(models.TextChoices):
        DISTANCE = "distance"
        SHARED_POOL = "shared_pool"

    ACTIVE_STATUSES = (Status.PENDING, Status.CONFIRMED)

    edition = models.ForeignKey("registrations.EventEdition", on_delete=models.CASCADE, related_name="holds")
    distance = models.ForeignKey("registrations.Distance", on_delete=models.PROTECT, related_name="holds")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    quantity = models.PositiveIntegerField(default=1)
    counted_against = models.CharField(max_length=20, choices=CountedAgainst.choices, default=CountedAgainst.DISTANCE)
    expires_at = models.DateTimeField(null=True, blank=True)
    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="registration_holds",
    )
    confirmed_at = models.DateTimeField(null=True, blank=True)
    finalized_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)

    objects = RegistrationHoldManager()

    class Meta:
        indexes = [
            # sweep lookup
            models.Index(fields=["status", "expires_at"], name="hold_status_expires"),
        ]
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Hold {self.pk} ({self.status})"
