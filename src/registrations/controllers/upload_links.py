from ninja_extra import ControllerBase, api_controller, route

from common.throttling import AnonDefaultThrottle
from registrations import schema
from registrations.service import upload_link_service


@api_controller("/group-registrations/upload-links", tags=["Group Registrations"], throttle=AnonDefaultThrottle())
class UploadLinkController(ControllerBase):
    """Public endpoints for holders of an upload link."""

    @route.get("/{token}/status", url_name="upload_link_status", response=schema.UploadLinkStatusSchema)
    def status(self, token: str) -> schema.UploadLinkStatusSchema:
        """Tell whether the upload link can currently be used, and how much of its allowance is left.

        A link reports ``MAXED_OUT`` as soon as it cannot take one more invite.
        """
        link = upload_link_service.get_upload_link_by_token(token)
        return schema.UploadLinkStatusSchema(
            status=upload_link_service.check_link_usable(link, requested_invites=1).value,
            token_prefix=link.token_prefix,
            name=link.name,
            starts_at=link.starts_at,
            ends_at=link.ends_at,
            max_batches=link.max_batches,
            max_invites=link.max_invites,
            batches=upload_link_service.count_batches(link),
            active_invites=upload_link_service.count_active_invites(link),
        )
