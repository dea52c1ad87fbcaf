import typing as t
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from django.contrib.auth.models import AbstractUser
from django.utils import timezone

from registrations.models import Distance, EventEdition, GroupBatch, RegistrationInvite, UploadLink
from registrations.service import batch_service, invite_service, upload_link_service

BatchFactory = t.Callable[..., GroupBatch]


@pytest.fixture
def now() -> datetime:
    return timezone.now()


@pytest.fixture
def edition() -> EventEdition:
    return EventEdition.objects.create(name="City Marathon 2026", slug="city-marathon-2026")


@pytest.fixture
def distance(edition: EventEdition) -> Distance:
    return Distance.objects.create(edition=edition, label="10K", capacity=10)


@pytest.fixture
def upload_link(edition: EventEdition, organizer: AbstractUser) -> UploadLink:
    link, _ = upload_link_service.create_upload_link(edition, organizer, name="Running club")
    return link


@pytest.fixture
def batch_factory(distance: Distance, organizer: AbstractUser) -> BatchFactory:
    """Create a validated batch from a list of emails.

    A ``None`` entry produces a row that failed row validation.
    """

    def _create(
        emails: list[str | None],
        *,
        upload_link: UploadLink | None = None,
        on_distance: Distance | None = None,
        created_by: AbstractUser | None = None,
    ) -> GroupBatch:
        rows: list[batch_service.RowInput] = [
            {"raw_data": {"email": email}, "errors": []}
            if email is not None
            else {"raw_data": {"email": ""}, "errors": ["email: required"]}
            for email in emails
        ]
        return batch_service.create_batch(
            distance=on_distance or distance,
            rows=rows,
            created_by=created_by or organizer,
            upload_link=upload_link,
        )

    return _create


@pytest.fixture
def reserved_invite(batch_factory: BatchFactory, organizer: AbstractUser) -> RegistrationInvite:
    """A current draft invite for participant@example.com, backed by a pending hold."""
    batch = batch_factory(["participant@example.com"])
    result = batch_service.reserve_invites_for_batch(batch, actor=organizer)
    return RegistrationInvite.objects.get(pk=result.outcomes[0].invite_id)


@pytest.fixture
def mock_invite_task() -> t.Iterator[MagicMock]:
    with patch("registrations.tasks.send_registration_invite") as task:
        yield task


@pytest.fixture
def sent_invite(
    reserved_invite: RegistrationInvite,
    mock_invite_task: MagicMock,
    django_capture_on_commit_callbacks: t.Any,
) -> RegistrationInvite:
    with django_capture_on_commit_callbacks(execute=True):
        return invite_service.send_invite(reserved_invite)
