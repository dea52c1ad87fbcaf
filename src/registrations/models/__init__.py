from .edition import Distance, EventEdition
from .hold import RegistrationHold
from .invite import RegistrationInvite
from .upload import GroupBatch, GroupBatchRow, UploadLink

__all__ = [
    "Distance",
    "EventEdition",
    "GroupBatch",
    "GroupBatchRow",
    "RegistrationHold",
    "RegistrationInvite",
    "UploadLink",
]
