"""Tests for the group registration API endpoints."""

import typing as t
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from django.contrib.auth.models import AbstractUser
from django.test.client import Client
from django.urls import reverse
from django.utils import timezone

from registrations.models import Distance, GroupBatch, RegistrationHold, RegistrationInvite, UploadLink
from registrations.service import batch_service, expiry_service, upload_link_service
from registrations.service.tokens import derive_claim_token

pytestmark = pytest.mark.django_db

BatchFactory = t.Callable[..., GroupBatch]


@pytest.fixture
def organizer_client(organizer: AbstractUser) -> Client:
    client = Client()
    client.force_login(organizer)
    return client


@pytest.fixture
def participant_client(user: AbstractUser) -> Client:
    client = Client()
    client.force_login(user)
    return client


class TestBatchEndpoints:
    def test_reserve(self, organizer_client: Client, batch_factory: BatchFactory, distance: Distance) -> None:
        Distance.objects.filter(pk=distance.pk).update(capacity=1)
        batch = batch_factory(["a@example.com", "b@example.com"])
        url = reverse("api:reserve_group_batch", kwargs={"batch_id": batch.pk})

        response = organizer_client.post(url, data={}, content_type="application/json")

        assert response.status_code == 200, response.content
        data = response.json()
        assert data["processed"] == 2
        assert data["succeeded"] == 1
        assert data["failed"] == 1
        assert data["outcomes"][1]["code"] == "ROW_VALIDATION_FAILED"
        assert data["outcomes"][1]["reason"] == "SOLD_OUT"

    def test_reserve_with_limit(self, organizer_client: Client, batch_factory: BatchFactory) -> None:
        batch = batch_factory(["a@example.com", "b@example.com"])
        url = reverse("api:reserve_group_batch", kwargs={"batch_id": batch.pk})

        response = organizer_client.post(url, data={"limit": 1}, content_type="application/json")

        assert response.status_code == 200
        assert response.json()["remaining"] == 1

    def test_reserve_refused_by_link(
        self, organizer_client: Client, batch_factory: BatchFactory, upload_link: UploadLink
    ) -> None:
        batch = batch_factory(["a@example.com"], upload_link=upload_link)
        upload_link_service.revoke_upload_link(upload_link, None)
        url = reverse("api:reserve_group_batch", kwargs={"batch_id": batch.pk})

        response = organizer_client.post(url, data={}, content_type="application/json")

        assert response.status_code == 403
        assert response.json()["code"] == "LINK_REVOKED"

    def test_other_users_batch_is_not_found(
        self, participant_client: Client, batch_factory: BatchFactory
    ) -> None:
        batch = batch_factory(["a@example.com"])
        url = reverse("api:reserve_group_batch", kwargs={"batch_id": batch.pk})

        response = participant_client.post(url, data={}, content_type="application/json")

        assert response.status_code == 404

    def test_staff_sees_every_batch(
        self, batch_factory: BatchFactory, user_factory: t.Any
    ) -> None:
        staff = user_factory(is_staff=True)
        client = Client()
        client.force_login(staff)
        batch = batch_factory(["a@example.com"])
        url = reverse("api:reserve_group_batch", kwargs={"batch_id": batch.pk})

        response = client.post(url, data={}, content_type="application/json")

        assert response.status_code == 200

    def test_anonymous_is_rejected(self, batch_factory: BatchFactory) -> None:
        batch = batch_factory(["a@example.com"])
        url = reverse("api:reserve_group_batch", kwargs={"batch_id": batch.pk})

        response = Client().post(url, data={}, content_type="application/json")

        assert response.status_code == 401

    def test_send(
        self, organizer_client: Client, batch_factory: BatchFactory, mock_invite_task: MagicMock
    ) -> None:
        batch = batch_factory(["a@example.com", "b@example.com"])
        batch_service.reserve_invites_for_batch(batch)
        url = reverse("api:send_group_batch", kwargs={"batch_id": batch.pk})

        response = organizer_client.post(url, data={}, content_type="application/json")

        assert response.status_code == 200
        assert response.json() == {"sent": 2, "skipped": 0}

    def test_cancel(self, organizer_client: Client, batch_factory: BatchFactory, distance: Distance) -> None:
        batch = batch_factory(["a@example.com", "b@example.com"])
        batch_service.reserve_invites_for_batch(batch)
        url = reverse("api:cancel_group_batch", kwargs={"batch_id": batch.pk})

        response = organizer_client.post(url)

        assert response.status_code == 200
        assert response.json() == {"cancelled": 2}
        distance.refresh_from_db()
        assert distance.reserved_count == 0

    def test_cancelled_batch_cannot_be_reserved(self, organizer_client: Client, batch_factory: BatchFactory) -> None:
        batch = batch_factory(["a@example.com"])
        batch_service.cancel_batch(batch)
        url = reverse("api:reserve_group_batch", kwargs={"batch_id": batch.pk})

        response = organizer_client.post(url, data={}, content_type="application/json")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_BATCH"


class TestInviteEndpoints:
    def test_resend_cooldown_sets_retry_after(
        self, organizer_client: Client, sent_invite: RegistrationInvite, mock_invite_task: MagicMock
    ) -> None:
        url = reverse("api:resend_registration_invite", kwargs={"invite_id": sent_invite.pk})

        response = organizer_client.post(url)

        assert response.status_code == 429
        assert response.json()["code"] == "RESEND_COOLDOWN"
        assert int(response["Retry-After"]) > 0

    def test_resend(
        self, organizer_client: Client, reserved_invite: RegistrationInvite, mock_invite_task: MagicMock
    ) -> None:
        url = reverse("api:resend_registration_invite", kwargs={"invite_id": reserved_invite.pk})

        response = organizer_client.post(url)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "sent"
        assert data["send_count"] == 1
        assert "token_hash" not in data

    def test_rotate(self, organizer_client: Client, sent_invite: RegistrationInvite) -> None:
        url = reverse("api:rotate_registration_invite", kwargs={"invite_id": sent_invite.pk})

        response = organizer_client.post(url)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "draft"
        assert data["supersedes"] == str(sent_invite.pk)
        assert data["id"] != str(sent_invite.pk)

    def test_cancel(self, organizer_client: Client, sent_invite: RegistrationInvite, distance: Distance) -> None:
        url = reverse("api:cancel_registration_invite", kwargs={"invite_id": sent_invite.pk})

        response = organizer_client.post(url)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        distance.refresh_from_db()
        assert distance.reserved_count == 0

        again = organizer_client.post(url)
        assert again.status_code == 409
        assert again.json()["code"] == "INVALID_STATE"

    def test_update_email(self, organizer_client: Client, reserved_invite: RegistrationInvite) -> None:
        url = reverse("api:update_registration_invite_email", kwargs={"invite_id": reserved_invite.pk})

        response = organizer_client.patch(url, data={"email": "fixed@example.com"}, content_type="application/json")

        assert response.status_code == 200
        assert response.json()["email"] == "fixed@example.com"

    def test_update_email_invalid(self, organizer_client: Client, reserved_invite: RegistrationInvite) -> None:
        url = reverse("api:update_registration_invite_email", kwargs={"invite_id": reserved_invite.pk})

        response = organizer_client.patch(url, data={"email": "broken"}, content_type="application/json")

        assert response.status_code == 400
        assert "errors" in response.json()

    def test_invite_of_another_organizer_is_not_found(
        self, participant_client: Client, reserved_invite: RegistrationInvite
    ) -> None:
        url = reverse("api:cancel_registration_invite", kwargs={"invite_id": reserved_invite.pk})

        response = participant_client.post(url)

        assert response.status_code == 404

    def test_reissue(self, organizer_client: Client, sent_invite: RegistrationInvite) -> None:
        assert sent_invite.expires_at is not None
        expiry_service.sweep(now=sent_invite.expires_at + timedelta(seconds=1))
        url = reverse("api:reissue_registration_invite", kwargs={"invite_id": sent_invite.pk})

        response = organizer_client.post(url)

        assert response.status_code == 200
        assert response.json()["status"] == "draft"
        assert response.json()["is_current"] is True

    def test_extend_hold(
        self, organizer_client: Client, sent_invite: RegistrationInvite, participant_client: Client
    ) -> None:
        claim = participant_client.post(
            reverse("api:claim_registration_invite"),
            data={"token": derive_claim_token(sent_invite.pk)},
            content_type="application/json",
        )
        assert claim.status_code == 200
        url = reverse("api:extend_registration_hold", kwargs={"invite_id": sent_invite.pk})

        response = organizer_client.post(url)

        assert response.status_code == 200
        hold = RegistrationHold.objects.get(pk=sent_invite.hold_id)
        assert hold.expires_at is not None
        assert hold.expires_at > timezone.now() + timedelta(hours=24)


class TestClaimEndpoint:
    def test_claim(self, participant_client: Client, sent_invite: RegistrationInvite) -> None:
        response = participant_client.post(
            reverse("api:claim_registration_invite"),
            data={"token": derive_claim_token(sent_invite.pk)},
            content_type="application/json",
        )

        assert response.status_code == 200
        assert response.json() == {"hold_id": str(sent_invite.hold_id)}

    def test_unknown_token(self, participant_client: Client) -> None:
        response = participant_client.post(
            reverse("api:claim_registration_invite"), data={"token": "nope"}, content_type="application/json"
        )

        assert response.status_code == 404
        assert response.json()["code"] == "TOKEN_INVALID"

    def test_wrong_account(self, organizer_client: Client, sent_invite: RegistrationInvite) -> None:
        response = organizer_client.post(
            reverse("api:claim_registration_invite"),
            data={"token": derive_claim_token(sent_invite.pk)},
            content_type="application/json",
        )

        assert response.status_code == 403
        assert response.json()["code"] == "EMAIL_MISMATCH"

    def test_expired(self, participant_client: Client, sent_invite: RegistrationInvite) -> None:
        RegistrationInvite.objects.filter(pk=sent_invite.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

        response = participant_client.post(
            reverse("api:claim_registration_invite"),
            data={"token": derive_claim_token(sent_invite.pk)},
            content_type="application/json",
        )

        assert response.status_code == 410
        assert response.json()["code"] == "INVITE_EXPIRED"

    def test_anonymous(self, sent_invite: RegistrationInvite) -> None:
        response = Client().post(
            reverse("api:claim_registration_invite"),
            data={"token": derive_claim_token(sent_invite.pk)},
            content_type="application/json",
        )

        assert response.status_code == 401


class TestCompleteEndpoint:
    def _claim(self, client: Client, invite: RegistrationInvite) -> str:
        response = client.post(
            reverse("api:claim_registration_invite"),
            data={"token": derive_claim_token(invite.pk)},
            content_type="application/json",
        )
        assert response.status_code == 200
        return t.cast(str, response.json()["hold_id"])

    def test_complete(self, participant_client: Client, sent_invite: RegistrationInvite) -> None:
        hold_id = self._claim(participant_client, sent_invite)

        response = participant_client.post(reverse("api:complete_group_registration", kwargs={"hold_id": hold_id}))

        assert response.status_code == 200, response.content
        data = response.json()
        assert data["hold_id"] == hold_id
        assert data["finalized_at"]
        hold = RegistrationHold.objects.get(pk=hold_id)
        assert hold.finalized_at is not None
        assert hold.expires_at is None

    def test_after_deadline(self, participant_client: Client, sent_invite: RegistrationInvite) -> None:
        hold_id = self._claim(participant_client, sent_invite)
        RegistrationHold.objects.filter(pk=hold_id).update(expires_at=timezone.now() - timedelta(minutes=1))

        response = participant_client.post(reverse("api:complete_group_registration", kwargs={"hold_id": hold_id}))

        assert response.status_code == 410
        assert response.json()["code"] == "INVITE_EXPIRED"

    def test_other_account_cannot_complete(
        self, participant_client: Client, organizer_client: Client, sent_invite: RegistrationInvite
    ) -> None:
        hold_id = self._claim(participant_client, sent_invite)

        response = organizer_client.post(reverse("api:complete_group_registration", kwargs={"hold_id": hold_id}))

        assert response.status_code == 404
        assert RegistrationHold.objects.get(pk=hold_id).finalized_at is None


class TestUploadLinkStatusEndpoint:
    def test_status(self, edition: t.Any, organizer: AbstractUser, batch_factory: BatchFactory) -> None:
        link, raw = upload_link_service.create_upload_link(edition, organizer, name="Club", max_batches=3)
        batch_factory(["a@example.com"], upload_link=link)

        response = Client().get(reverse("api:upload_link_status", kwargs={"token": raw}))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ACTIVE"
        assert data["token_prefix"] == raw[:8]
        assert data["batches"] == 1
        assert data["active_invites"] == 0
        assert raw not in response.content.decode()

    def test_full_invite_allowance_is_maxed_out(
        self, edition: t.Any, organizer: AbstractUser, batch_factory: BatchFactory
    ) -> None:
        link, raw = upload_link_service.create_upload_link(edition, organizer, max_invites=1)
        batch = batch_factory(["a@example.com"], upload_link=link)
        assert batch_service.reserve_invites_for_batch(batch).succeeded == 1

        response = Client().get(reverse("api:upload_link_status", kwargs={"token": raw}))

        data = response.json()
        assert data["status"] == "MAXED_OUT"
        assert data["active_invites"] == 1
        assert data["max_invites"] == 1

    def test_revoked(self, edition: t.Any, organizer: AbstractUser) -> None:
        link, raw = upload_link_service.create_upload_link(edition, organizer)
        upload_link_service.revoke_upload_link(link, organizer)

        response = Client().get(reverse("api:upload_link_status", kwargs={"token": raw}))

        assert response.json()["status"] == "REVOKED"

    def test_unknown(self) -> None:
        response = Client().get(reverse("api:upload_link_status", kwargs={"token": "missing"}))

        assert response.status_code == 404
        assert response.json()["code"] == "TOKEN_INVALID"
