import typing as t

from django.db import models
from django.db.models import F, Q

from common.models import TimeStampedModel


class EventEdition(TimeStampedModel):
    """A single edition of an event, the owner of distances and their shared capacity pool."""

    name = models.CharField(max_length=255)
    slug = models.SlugField(max_length=255, unique=True)
    shared_capacity = models.PositiveIntegerField(
        null=True, blank=True, help_text="Combined capacity for shared-pool distances. Empty means unlimited."
    )
    shared_reserved_count = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(shared_capacity__isnull=True) | Q(shared_reserved_count__lte=F("shared_capacity")),
                name="edition_shared_reserved_within_capacity",
            )
        ]
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.name


class Distance(TimeStampedModel):
    """A bounded pool of slots for one race option of an edition."""

    class CapacityScope(models.TextChoices):
        EXCLUSIVE = "exclusive"
        SHARED_POOL = "shared_pool"

    edition = models.ForeignKey(EventEdition, on_delete=models.CASCADE, related_name="distances")
    label = models.CharField(max_length=255)
    capacity = models.PositiveIntegerField(null=True, blank=True, help_text="Empty means unlimited.")
    capacity_scope = models.CharField(
        max_length=20, choices=CapacityScope.choices, default=CapacityScope.EXCLUSIVE, db_index=True
    )
    reserved_count = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(capacity__isnull=True) | Q(reserved_count__lte=F("capacity")),
                name="distance_reserved_within_capacity",
            ),
            models.UniqueConstraint(fields=["edition", "label"], name="unique_distance_edition_label"),
        ]
        ordering = ["edition", "label"]

    def __str__(self) -> str:
        return f"{self.edition.name} - {self.label}"

    @property
    def uses_shared_pool(self) -> bool:
        """Whether reservations against this distance consume the edition's shared counter."""
        return self.capacity_scope == self.CapacityScope.SHARED_POOL and self.edition.shared_capacity is not None

    @property
    def remaining(self) -> int | None:
        """Free seats in the counter this distance draws from, or None when unlimited."""
        if self.uses_shared_pool:
            edition = self.edition
            return t.cast(int, edition.shared_capacity) - edition.shared_reserved_count
        if self.capacity is None:
            return None
        return self.capacity - self.reserved_count
