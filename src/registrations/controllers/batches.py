from uuid import UUID

from ninja.security import django_auth
from ninja_extra import api_controller, route

from common.throttling import WriteThrottle
from registrations import schema
from registrations.service import batch_service

from .base import GroupRegistrationBaseController


@api_controller(
    "/group-registrations/batches",
    auth=django_auth,
    tags=["Group Registrations"],
    throttle=WriteThrottle(),
)
class GroupBatchController(GroupRegistrationBaseController):
    """Batch-level operations for group registration coordinators."""

    @route.post(
        "/{batch_id}/reserve",
        url_name="reserve_group_batch",
        response=schema.BatchReservationResultSchema,
    )
    def reserve(self, batch_id: UUID, payload: schema.BatchReserveSchema) -> batch_service.BatchReservationResult:
        """Reserve capacity and create a draft invite for each valid row of the batch.

        Rows are processed in order; a row that fails (sold out, duplicate email,
        already registered) is reported in `outcomes` and does not stop the rest.
        Calling this again only touches rows that have not been reserved yet;
        pass `retry_failed` to retry rows that failed before.
        """
        batch = self.get_batch(batch_id)
        return batch_service.reserve_invites_for_batch(
            batch, actor=self.user(), limit=payload.limit, retry_failed=payload.retry_failed
        )

    @route.post("/{batch_id}/send", url_name="send_group_batch", response=schema.BatchSendResultSchema)
    def send(self, batch_id: UUID, payload: schema.BatchSendSchema) -> schema.BatchSendResultSchema:
        """Send all draft invites of the batch to their recipients."""
        batch = self.get_batch(batch_id)
        sent, skipped = batch_service.send_invites_for_batch(batch, limit=payload.limit)
        return schema.BatchSendResultSchema(sent=sent, skipped=skipped)

    @route.post("/{batch_id}/cancel", url_name="cancel_group_batch", response=schema.BatchCancelResultSchema)
    def cancel(self, batch_id: UUID) -> schema.BatchCancelResultSchema:
        """Cancel every open invite of the batch and free its capacity. Claimed invites are kept."""
        batch = self.get_batch(batch_id)
        return schema.BatchCancelResultSchema(cancelled=batch_service.cancel_batch(batch))
