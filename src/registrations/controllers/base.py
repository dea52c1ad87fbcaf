import typing as t
from uuid import UUID

from django.db.models import Q, QuerySet

from common.controllers import UserAwareController
from registrations import models


class GroupRegistrationBaseController(UserAwareController):
    """Base controller for group registration coordinator endpoints.

    Staff see every batch; other users only the batches they uploaded.
    """

    def _owned(self) -> Q:
        user = self.user()
        if user.is_staff:
            return Q()
        return Q(batch__created_by=user)

    def get_batch_queryset(self) -> QuerySet[models.GroupBatch]:
        user = self.user()
        qs = models.GroupBatch.objects.all()
        return qs if user.is_staff else qs.filter(created_by=user)

    def get_invite_queryset(self) -> QuerySet[models.RegistrationInvite]:
        return models.RegistrationInvite.objects.filter(self._owned())

    def get_batch(self, batch_id: UUID) -> models.GroupBatch:
        return t.cast(models.GroupBatch, self.get_object_or_exception(self.get_batch_queryset(), pk=batch_id))

    def get_invite(self, invite_id: UUID) -> models.RegistrationInvite:
        return t.cast(
            models.RegistrationInvite, self.get_object_or_exception(self.get_invite_queryset(), pk=invite_id)
        )
