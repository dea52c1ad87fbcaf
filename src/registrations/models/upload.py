from django.conf import settings
from django.db import models

from common.models import TimeStampedModel


class UploadLink(TimeStampedModel):
    """A shareable capability that lets an organizer's delegate upload group rosters."""

    edition = models.ForeignKey("registrations.EventEdition", on_delete=models.CASCADE, related_name="upload_links")
    token_hash = models.CharField(max_length=64, unique=True)
    token_prefix = models.CharField(max_length=8)
    name = models.CharField(max_length=255, blank=True, default="")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_upload_links",
    )
    starts_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    max_batches = models.PositiveIntegerField(null=True, blank=True)
    max_invites = models.PositiveIntegerField(null=True, blank=True)
    revoked_at = models.DateTimeField(null=True, blank=True)
    revoked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="revoked_upload_links",
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.name or f"Upload link {self.token_prefix}"


class GroupBatch(TimeStampedModel):
    """One uploaded roster."""

    class Status(models.TextChoices):
        UPLOADED = "uploaded"
        VALIDATED = "validated"
        PROCESSED = "processed"
        FAILED = "failed"

    edition = models.ForeignKey("registrations.EventEdition", on_delete=models.CASCADE, related_name="batches")
    upload_link = models.ForeignKey(
        UploadLink, on_delete=models.SET_NULL, null=True, blank=True, related_name="batches"
    )
    distance = models.ForeignKey("registrations.Distance", on_delete=models.PROTECT, related_name="batches")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="group_batches",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.UPLOADED, db_index=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "group batches"

    def __str__(self) -> str:
        return f"Batch {self.pk} ({self.status})"


class GroupBatchRow(TimeStampedModel):
    """A single participant row of a batch, as supplied by the row-validation step."""

    batch = models.ForeignKey(GroupBatch, on_delete=models.CASCADE, related_name="rows")
    row_index = models.PositiveIntegerField()
    raw_data = models.JSONField(default=dict, blank=True)
    email_normalized = models.CharField(max_length=254, blank=True, default="", db_index=True)
    validation_errors = models.JSONField(default=list, blank=True)
    reservation_error = models.CharField(max_length=50, blank=True, default="")
    created_hold = models.ForeignKey(
        "registrations.RegistrationHold",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="batch_rows",
    )

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["batch", "row_index"], name="unique_batch_row_index"),
        ]
        ordering = ["batch", "row_index"]

    def __str__(self) -> str:
        return f"Row {self.row_index} of batch {self.batch_id}"

    @property
    def email(self) -> str:
        """The supplied address as text. Spreadsheet cells may hold numbers or nothing at all."""
        data = self.raw_data if isinstance(self.raw_data, dict) else {}
        value = data.get("email")
        return "" if value is None else str(value).strip()
