import typing as t
from datetime import datetime
from uuid import UUID

from ninja.security import django_auth
from ninja_extra import api_controller, route

from common.throttling import ClaimThrottle, WriteThrottle
from registrations import models, schema
from registrations.service import expiry_service, invite_service

from .base import GroupRegistrationBaseController


@api_controller(
    "/group-registrations/invites",
    auth=django_auth,
    tags=["Group Registrations"],
    throttle=WriteThrottle(),
)
class RegistrationInviteController(GroupRegistrationBaseController):
    """Invite-level operations, plus the participant-facing claim endpoint."""

    @route.post(
        "/claim",
        url_name="claim_registration_invite",
        response=schema.ClaimInviteResponse,
        throttle=ClaimThrottle(),
    )
    def claim(self, payload: schema.ClaimInviteSchema) -> schema.ClaimInviteResponse:
        """Claim the registration slot behind an invite link.

        The signed-in user's email must match the address the invite was sent to.
        Claiming the same invite twice with the same account is harmless and
        returns the same registration.
        """
        hold_id = invite_service.claim_invite(payload.token, self.user())
        return schema.ClaimInviteResponse(hold_id=hold_id)

    @route.post(
        "/registrations/{hold_id}/complete",
        url_name="complete_group_registration",
        response=schema.RegistrationCompleteResponse,
    )
    def complete(self, hold_id: UUID) -> schema.RegistrationCompleteResponse:
        """Complete a registration the signed-in user claimed, before its deadline passes."""
        hold = t.cast(
            models.RegistrationHold,
            self.get_object_or_exception(models.RegistrationHold.objects.filter(buyer=self.user()), pk=hold_id),
        )
        hold = invite_service.complete_registration(hold)
        return schema.RegistrationCompleteResponse(hold_id=hold.pk, finalized_at=t.cast(datetime, hold.finalized_at))

    @route.post("/{invite_id}/resend", url_name="resend_registration_invite", response=schema.RegistrationInviteSchema)
    def resend(self, invite_id: UUID) -> models.RegistrationInvite:
        """Send the invite again. Subject to a cooldown and a maximum number of sends."""
        return invite_service.resend_invite(self.get_invite(invite_id))

    @route.post("/{invite_id}/rotate", url_name="rotate_registration_invite", response=schema.RegistrationInviteSchema)
    def rotate(self, invite_id: UUID) -> models.RegistrationInvite:
        """Invalidate the current invite link and issue a new draft invite for the same participant."""
        return invite_service.rotate_invite_token(self.get_invite(invite_id), actor=self.user())

    @route.post("/{invite_id}/cancel", url_name="cancel_registration_invite", response=schema.RegistrationInviteSchema)
    def cancel(self, invite_id: UUID) -> models.RegistrationInvite:
        """Cancel the invite and free its seat."""
        return invite_service.cancel_invite(self.get_invite(invite_id))

    @route.post(
        "/{invite_id}/extend-hold", url_name="extend_registration_hold", response=schema.HoldExtensionResponse
    )
    def extend_hold(self, invite_id: UUID) -> schema.HoldExtensionResponse:
        """Give a participant who claimed the invite more time to complete the registration."""
        expires_at = expiry_service.extend_hold(self.get_invite(invite_id))
        return schema.HoldExtensionResponse(expires_at=expires_at)

    @route.post(
        "/{invite_id}/reissue", url_name="reissue_registration_invite", response=schema.RegistrationInviteSchema
    )
    def reissue(self, invite_id: UUID) -> models.RegistrationInvite:
        """Issue a new invite, backed by a fresh reservation, for an invite that expired."""
        return expiry_service.reissue_invite(self.get_invite(invite_id), actor=self.user())

    @route.patch(
        "/{invite_id}/email",
        url_name="update_registration_invite_email",
        response=schema.RegistrationInviteSchema,
    )
    def update_email(self, invite_id: UUID, payload: schema.InviteEmailUpdateSchema) -> models.RegistrationInvite:
        """Correct the recipient's email address. The invite link stays the same."""
        return invite_service.update_invite_email(self.get_invite(invite_id), payload.email)
