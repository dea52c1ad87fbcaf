import typing as t

from django.conf import settings
from django.db import models
from django.db.models import Q

from common.models import TimeStampedModel


class RegistrationInviteQuerySet(models.QuerySet["RegistrationInvite"]):
    def current(self) -> t.Self:
        return self.filter(is_current=True)

    def active(self) -> t.Self:
        """Current invites that can still be sent or claimed."""
        return self.filter(is_current=True, status__in=RegistrationInvite.ACTIVE_STATUSES)

    def with_related(self) -> t.Self:
        return self.select_related("hold", "hold__distance", "batch_row", "batch", "upload_link", "edition")


class RegistrationInviteManager(models.Manager["RegistrationInvite"]):
    def get_queryset(self) -> RegistrationInviteQuerySet:
        return RegistrationInviteQuerySet(self.model, using=self._db)

    def current(self) -> RegistrationInviteQuerySet:
        return self.get_queryset().current()

    def active(self) -> RegistrationInviteQuerySet:
        return self.get_queryset().active()

    def with_related(self) -> RegistrationInviteQuerySet:
        return self.get_queryset().with_related()


class RegistrationInvite(TimeStampedModel):
    """The claimable, token-protected representation of a hold."""

    class Status(models.TextChoices):
        DRAFT = "draft"
        SENT = "sent"
        CLAIMED = "claimed"
        CANCELLED = "cancelled"
        EXPIRED = "expired"
        SUPERSEDED = "superseded"

    ACTIVE_STATUSES = (Status.DRAFT, Status.SENT)
    TERMINAL_STATUSES = (Status.CLAIMED, Status.CANCELLED, Status.EXPIRED, Status.SUPERSEDED)

    edition = models.ForeignKey("registrations.EventEdition", on_delete=models.CASCADE, related_name="invites")
    upload_link = models.ForeignKey(
        "registrations.UploadLink", on_delete=models.SET_NULL, null=True, blank=True, related_name="invites"
    )
    batch = models.ForeignKey("registrations.GroupBatch", on_delete=models.CASCADE, related_name="invites")
    batch_row = models.ForeignKey("registrations.GroupBatchRow", on_delete=models.CASCADE, related_name="invites")
    hold = models.ForeignKey("registrations.RegistrationHold", on_delete=models.CASCADE, related_name="invites")
    supersedes = models.ForeignKey(
        "self", on_delete=models.SET_NULL, null=True, blank=True, related_name="superseded_by"
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)
    token_hash = models.CharField(max_length=64, unique=True)
    token_prefix = models.CharField(max_length=8)
    email = models.EmailField()
    email_normalized = models.CharField(max_length=254, db_index=True)
    send_count = models.PositiveIntegerField(default=0)
    last_sent_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    is_current = models.BooleanField(default=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_registration_invites",
    )
    claimed_at = models.DateTimeField(null=True, blank=True)
    claimed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="claimed_registration_invites",
    )

    objects = RegistrationInviteManager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["batch_row"],
                condition=Q(is_current=True),
                name="unique_current_invite_per_row",
            ),
            models.UniqueConstraint(
                fields=["edition", "email_normalized"],
                condition=Q(is_current=True, status__in=["draft", "sent"]),
                name="unique_active_invite_per_email",
            ),
        ]
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Invite {self.token_prefix} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES
