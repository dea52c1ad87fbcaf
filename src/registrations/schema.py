from datetime import datetime
from uuid import UUID

from ninja import ModelSchema, Schema
from pydantic import Field

from registrations import models


class RegistrationInviteSchema(ModelSchema):
    class Meta:
        model = models.RegistrationInvite
        fields = [
            "id",
            "status",
            "token_prefix",
            "email",
            "send_count",
            "last_sent_at",
            "expires_at",
            "is_current",
            "claimed_at",
            "hold",
            "batch_row",
            "supersedes",
            "created_at",
        ]


class BatchReserveSchema(Schema):
    limit: int | None = Field(default=None, ge=1)
    retry_failed: bool = False


class BatchSendSchema(Schema):
    limit: int | None = Field(default=None, ge=1)


class RowOutcomeSchema(Schema):
    row_id: UUID
    row_index: int
    succeeded: bool
    code: str | None = None
    reason: str | None = None
    invite_id: UUID | None = None
    hold_id: UUID | None = None


class BatchReservationResultSchema(Schema):
    processed: int
    succeeded: int
    failed: int
    remaining: int
    halted_reason: str | None = None
    outcomes: list[RowOutcomeSchema]


class BatchSendResultSchema(Schema):
    sent: int
    skipped: int


class BatchCancelResultSchema(Schema):
    cancelled: int


class InviteEmailUpdateSchema(Schema):
    email: str = Field(max_length=254)


class ClaimInviteSchema(Schema):
    token: str = Field(min_length=1, max_length=128)


class ClaimInviteResponse(Schema):
    hold_id: UUID


class HoldExtensionResponse(Schema):
    expires_at: datetime


class RegistrationCompleteResponse(Schema):
    hold_id: UUID
    finalized_at: datetime


class UploadLinkStatusSchema(Schema):
    status: str
    token_prefix: str
    name: str
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    max_batches: int | None = None
    max_invites: int | None = None
    batches: int
    active_invites: int
