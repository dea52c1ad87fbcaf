from .batches import GroupBatchController
from .invites import RegistrationInviteController
from .upload_links import UploadLinkController

GROUP_REGISTRATION_CONTROLLERS: list[type] = [
    GroupBatchController,
    RegistrationInviteController,
    UploadLinkController,
]

__all__ = [
    "GROUP_REGISTRATION_CONTROLLERS",
    "GroupBatchController",
    "RegistrationInviteController",
    "UploadLinkController",
]
