"""Batch reservation orchestration for uploaded group rosters."""

import typing as t
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

import structlog
from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from common.utils import normalize_email
from registrations.exceptions import (
    CapacityExhaustedError,
    ConcurrentModificationError,
    InvalidBatchError,
    InvalidInviteTransitionError,
    InviteExpiredError,
    ResendLimitError,
    RowValidationFailedError,
    UploadLinkUnavailableError,
)
from registrations.models import Distance, GroupBatch, GroupBatchRow, RegistrationInvite, UploadLink

from . import capacity_ledger, invite_service, invite_state, upload_link_service
from .invite_state import InviteEvent

logger = structlog.get_logger(__name__)


class RowFailureReason:
    SOLD_OUT = "SOLD_OUT"
    DUPLICATE_EMAIL_IN_FILE = "DUPLICATE_EMAIL_IN_FILE"
    EXISTING_ACTIVE_INVITE = invite_service.EXISTING_ACTIVE_INVITE
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    INVALID_ROW = "INVALID_ROW"


@dataclass
class RowOutcome:
    row_id: UUID
    row_index: int
    succeeded: bool
    code: str | None = None
    reason: str | None = None
    invite_id: UUID | None = None
    hold_id: UUID | None = None


@dataclass
class BatchReservationResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0
    halted_reason: str | None = None
    outcomes: list[RowOutcome] = field(default_factory=list)


class RowInput(t.TypedDict):
    """A row as handed over by the row-validation step."""

    raw_data: dict[str, t.Any]
    errors: list[str]


RESERVABLE_BATCH_STATUSES = (GroupBatch.Status.VALIDATED, GroupBatch.Status.PROCESSED)


def _chunks(items: Sequence[GroupBatchRow], size: int) -> Iterable[Sequence[GroupBatchRow]]:
    for start in range(0, len(items), max(size, 1)):
        yield items[start : start + size]


@transaction.atomic
def create_batch(
    *,
    distance: Distance,
    rows: Sequence[RowInput],
    created_by: AbstractUser | None = None,
    upload_link: UploadLink | None = None,
    now: datetime | None = None,
) -> GroupBatch:
    """Store an uploaded roster.

    Rows arrive already validated; their error codes are stored as-is.

    Raises:
        InvalidBatchError: If the roster is too large or the link belongs to another edition.
        UploadLinkUnavailableError: If the link may not create another batch.
    """
    now = now or timezone.now()
    if len(rows) > settings.GROUP_UPLOAD_MAX_ROWS:
        raise InvalidBatchError(f"A roster may contain at most {settings.GROUP_UPLOAD_MAX_ROWS} rows.")
    if upload_link is not None:
        if upload_link.edition_id != distance.edition_id:
            raise InvalidBatchError("The distance does not belong to the upload link's edition.")
        upload_link = upload_link_service.lock_upload_link(upload_link)
        upload_link_service.assert_link_usable(upload_link, now, requested_batches=1)

    has_valid_rows = any(not row["errors"] for row in rows)
    batch = GroupBatch.objects.create(
        edition_id=distance.edition_id,
        upload_link=upload_link,
        distance=distance,
        created_by=created_by,
        status=GroupBatch.Status.VALIDATED if has_valid_rows else GroupBatch.Status.FAILED,
    )
    GroupBatchRow.objects.bulk_create(
        [
            GroupBatchRow(
                batch=batch,
                row_index=index,
                raw_data=row["raw_data"],
                email_normalized=normalize_email(str(row["raw_data"].get("email") or "")),
                validation_errors=list(row["errors"]),
            )
            for index, row in enumerate(rows)
        ]
    )
    logger.info(
        "group_batch_created",
        batch_id=str(batch.pk),
        upload_link_id=str(upload_link.pk) if upload_link else None,
        rows=len(rows),
        status=batch.status,
    )
    return batch


class BatchReservationService:
    """Reserves capacity and mints a draft invite for each reservable row of a batch.

    Every row is handled in its own transaction. A failing row is recorded and
    the loop moves on; only a refusal by the upload link governor stops it.
    Rows that already own a hold are never reserved again, so the service can be
    re-run on the same batch.
    """

    def __init__(self, batch: GroupBatch, actor: AbstractUser | None = None, now: datetime | None = None) -> None:
        self.batch = GroupBatch.objects.select_related("distance", "upload_link").get(pk=batch.pk)
        self.actor = actor
        self.now = now or timezone.now()
        self._first_row_by_email: dict[str, int] = {}

    def _assert_reservable(self) -> None:
        if self.batch.cancelled_at is not None:
            raise InvalidBatchError("The batch has been cancelled.")
        if self.batch.status not in RESERVABLE_BATCH_STATUSES:
            raise InvalidBatchError(f"A {self.batch.status} batch cannot be reserved.")

    def _pending_rows(self, retry_failed: bool) -> list[GroupBatchRow]:
        rows = list(self.batch.rows.order_by("row_index"))
        for row in rows:
            if row.validation_errors or not row.email_normalized:
                continue
            self._first_row_by_email.setdefault(row.email_normalized, row.row_index)
        return [
            row
            for row in rows
            if not row.validation_errors
            and row.created_hold_id is None
            and (retry_failed or not row.reservation_error)
        ]

    def _check_row(self, row: GroupBatchRow) -> str:
        email = row.email
        if not email:
            raise RowValidationFailedError(RowFailureReason.INVALID_ROW)
        try:
            validate_email(email)
        except ValidationError:
            raise RowValidationFailedError(RowFailureReason.INVALID_ROW) from None
        normalized = normalize_email(email)
        if self._first_row_by_email.get(normalized, row.row_index) != row.row_index:
            raise RowValidationFailedError(RowFailureReason.DUPLICATE_EMAIL_IN_FILE)
        if invite_service.has_open_invite(self.batch.edition_id, normalized):
            raise RowValidationFailedError(RowFailureReason.EXISTING_ACTIVE_INVITE)
        if invite_service.has_active_registration(self.batch.edition_id, normalized):
            raise RowValidationFailedError(RowFailureReason.ALREADY_REGISTERED)
        return email

    def _reserve_row(self, row: GroupBatchRow) -> RowOutcome:
        with transaction.atomic():
            email = self._check_row(row)
            if self.batch.upload_link is not None:
                link = upload_link_service.lock_upload_link(self.batch.upload_link)
                upload_link_service.assert_link_usable(link, self.now, requested_invites=1)
            hold = capacity_ledger.reserve(self.batch.distance, now=self.now)
            row.batch = self.batch
            invite = invite_service.create_invite(batch_row=row, hold=hold, email=email, created_by=self.actor)
            GroupBatchRow.objects.filter(pk=row.pk).update(created_hold=hold, reservation_error="", updated_at=self.now)
        return RowOutcome(
            row_id=row.pk, row_index=row.row_index, succeeded=True, invite_id=invite.pk, hold_id=hold.pk
        )

    def _record_failure(self, row: GroupBatchRow, reason: str, *, persist: bool = True) -> RowOutcome:
        if persist:
            GroupBatchRow.objects.filter(pk=row.pk).update(reservation_error=reason, updated_at=self.now)
        logger.info(
            "group_row_reservation_failed", batch_id=str(self.batch.pk), row_index=row.row_index, reason=reason
        )
        return RowOutcome(
            row_id=row.pk,
            row_index=row.row_index,
            succeeded=False,
            code=RowValidationFailedError.code,
            reason=reason,
        )

    def reserve(self, limit: int | None = None, retry_failed: bool = False) -> BatchReservationResult:
        """Reserve pending rows in ``row_index`` order.

        Args:
            limit: Maximum number of rows to attempt in this call.
            retry_failed: Also retry rows whose previous attempt failed.

        Raises:
            InvalidBatchError: If the batch is cancelled or not validated.
            UploadLinkUnavailableError: If the link refuses any further invite before the first row.
        """
        self._assert_reservable()
        rows = self._pending_rows(retry_failed)
        to_process = rows if limit is None else rows[:limit]
        result = BatchReservationResult()

        if to_process and self.batch.upload_link is not None:
            upload_link_service.assert_link_usable(self.batch.upload_link, self.now, requested_invites=1)

        for chunk in _chunks(to_process, settings.GROUP_UPLOAD_RESERVE_CHUNK_SIZE):
            for row in chunk:
                try:
                    outcome = self._reserve_row(row)
                except RowValidationFailedError as e:
                    outcome = self._record_failure(row, e.reason)
                except CapacityExhaustedError:
                    outcome = self._record_failure(row, RowFailureReason.SOLD_OUT)
                except UploadLinkUnavailableError as e:
                    result.halted_reason = e.code
                    break
                except (IntegrityError, ValidationError):
                    # a concurrent upload created an open invite for the same email
                    outcome = self._record_failure(row, RowFailureReason.EXISTING_ACTIVE_INVITE)
                except DatabaseError:
                    logger.exception(
                        "group_row_reservation_error", batch_id=str(self.batch.pk), row_index=row.row_index
                    )
                    outcome = self._record_failure(row, "RESERVATION_ERROR", persist=False)
                result.outcomes.append(outcome)
                result.processed += 1
                if outcome.succeeded:
                    result.succeeded += 1
                else:
                    result.failed += 1
            if result.halted_reason:
                break
            logger.debug("group_batch_chunk_reserved", batch_id=str(self.batch.pk), processed=result.processed)

        result.remaining = len(rows) - result.processed
        if result.remaining == 0 and result.halted_reason is None:
            GroupBatch.objects.filter(pk=self.batch.pk, status=GroupBatch.Status.VALIDATED).update(
                status=GroupBatch.Status.PROCESSED, processed_at=self.now, updated_at=self.now
            )
        logger.info(
            "group_batch_reserved",
            batch_id=str(self.batch.pk),
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
            remaining=result.remaining,
            halted_reason=result.halted_reason,
        )
        return result


def reserve_invites_for_batch(
    batch: GroupBatch,
    *,
    actor: AbstractUser | None = None,
    limit: int | None = None,
    retry_failed: bool = False,
    now: datetime | None = None,
) -> BatchReservationResult:
    return BatchReservationService(batch, actor=actor, now=now).reserve(limit=limit, retry_failed=retry_failed)


def send_invites_for_batch(
    batch: GroupBatch, *, limit: int | None = None, now: datetime | None = None
) -> tuple[int, int]:
    """Send the unsent, unexpired current invites of a batch.

    Returns:
        ``(sent, skipped)``. Invites that reached the send limit or changed state
        concurrently are skipped.
    """
    now = now or timezone.now()
    batch = GroupBatch.objects.get(pk=batch.pk)
    if batch.cancelled_at is not None or batch.status not in RESERVABLE_BATCH_STATUSES:
        raise InvalidBatchError(f"Invites of a {batch.status} batch cannot be sent.")

    invites = list(
        RegistrationInvite.objects.current()
        .filter(batch=batch, status=RegistrationInvite.Status.DRAFT)
        .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
        .order_by("batch_row__row_index")
    )
    if limit is not None:
        invites = invites[:limit]

    sent = skipped = 0
    chunk_size = max(settings.GROUP_UPLOAD_INVITE_SEND_CHUNK_SIZE, 1)
    for start in range(0, len(invites), chunk_size):
        for invite in invites[start : start + chunk_size]:
            try:
                invite_service.send_invite(invite, now=now, enforce_cooldown=False)
            except (ResendLimitError, InviteExpiredError, InvalidInviteTransitionError, ConcurrentModificationError):
                skipped += 1
            else:
                sent += 1
    logger.info("group_batch_invites_sent", batch_id=str(batch.pk), sent=sent, skipped=skipped)
    return sent, skipped


@transaction.atomic
def cancel_batch(batch: GroupBatch, *, now: datetime | None = None) -> int:
    """Cancel every open invite of a batch and release their holds.

    Claimed invites are left alone. Cancelling an already cancelled batch does
    nothing.

    Returns:
        The number of invites cancelled.
    """
    now = now or timezone.now()
    batch = GroupBatch.objects.select_for_update().get(pk=batch.pk)
    if batch.cancelled_at is not None:
        return 0
    invites = RegistrationInvite.objects.active().select_for_update().select_related("hold").filter(batch=batch)
    cancelled = 0
    for invite in invites:
        invite_state.apply(invite, InviteEvent.CANCEL, now=now)
        capacity_ledger.release_or_escalate(invite.hold, now=now)
        cancelled += 1
    GroupBatch.objects.filter(pk=batch.pk).update(cancelled_at=now, updated_at=now)
    logger.info("group_batch_cancelled", batch_id=str(batch.pk), invites_cancelled=cancelled)
    return cancelled
