"""Errors raised by the group registration engine.

Every error carries a stable machine-readable ``code`` that the API layer
returns verbatim.
"""


class RegistrationEngineError(Exception):
    """Base class for all group registration errors."""

    code: str = "REGISTRATION_ERROR"
    default_detail: str = "The registration operation failed."

    def __init__(self, detail: str | None = None, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class CapacityExhaustedError(RegistrationEngineError):
    """Raised when a reservation lost the race for the last seats or the pool is full."""

    code = "CAPACITY_EXHAUSTED"
    default_detail = "No capacity left for this distance."
    reason = "SOLD_OUT"


class UploadLinkUnavailableError(RegistrationEngineError):
    """Raised when the upload link governor refuses an operation.

    The code mirrors the governor status, e.g. ``LINK_EXPIRED`` or ``LINK_MAXED_OUT``.
    """

    code = "LINK_UNAVAILABLE"
    default_detail = "This upload link cannot be used."

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(f"This upload link cannot be used ({status.lower()}).", code=f"LINK_{status}")


class TokenInvalidError(RegistrationEngineError):
    """Raised for unknown, mismatched or unusable tokens. Never says which."""

    code = "TOKEN_INVALID"
    default_detail = "This invite link is not valid."


class AlreadyClaimedError(RegistrationEngineError):
    code = "ALREADY_CLAIMED"
    default_detail = "This invite has already been claimed."


class InviteExpiredError(RegistrationEngineError):
    code = "INVITE_EXPIRED"
    default_detail = "This invite has expired."


class InvalidInviteTransitionError(RegistrationEngineError):
    """Raised when an event is not defined for the invite's current status."""

    code = "INVALID_STATE"
    default_detail = "This action is not allowed for the invite in its current state."

    def __init__(self, status: str, event: str, detail: str | None = None) -> None:
        self.status = status
        self.event = event
        super().__init__(detail or f"Cannot {event} an invite that is {status}.")


class RowValidationFailedError(RegistrationEngineError):
    """Raised when a single batch row cannot be reserved."""

    code = "ROW_VALIDATION_FAILED"
    default_detail = "The row could not be reserved."

    def __init__(self, reason: str, detail: str | None = None) -> None:
        self.reason = reason
        super().__init__(detail or reason)


class ConcurrentModificationError(RegistrationEngineError):
    """Raised when a guarded update found the row in an unexpected state."""

    code = "CONCURRENT_MODIFICATION"
    default_detail = "The record was modified concurrently. Please retry."


class CapacityReleaseError(RegistrationEngineError):
    """Raised when capacity could not be released while cancelling."""

    code = "CAPACITY_RELEASE_FAILED"
    default_detail = "Capacity could not be released. The cancellation was rolled back."


class ResendLimitError(RegistrationEngineError):
    code = "RESEND_LIMIT_REACHED"
    default_detail = "This invite has been sent the maximum number of times."


class ResendCooldownError(RegistrationEngineError):
    code = "RESEND_COOLDOWN"
    default_detail = "This invite was sent recently. Please wait before resending."

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__(f"This invite was sent recently. Retry in {retry_after} seconds.")


class EmailMismatchError(RegistrationEngineError):
    code = "EMAIL_MISMATCH"
    default_detail = "This invite was issued to a different email address."


class AlreadyRegisteredError(RegistrationEngineError):
    code = "ALREADY_REGISTERED"
    default_detail = "This participant is already registered for the edition."


class InvalidBatchError(RegistrationEngineError):
    code = "INVALID_BATCH"
    default_detail = "The batch cannot be processed in its current state."

