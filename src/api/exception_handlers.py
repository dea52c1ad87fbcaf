"""Exception handlers for the API."""

import traceback
import typing as t

import structlog
from django.conf import settings
from django.core.exceptions import ValidationError
from django.http import HttpRequest
from ninja.responses import Response

from registrations.exceptions import (
    AlreadyClaimedError,
    AlreadyRegisteredError,
    CapacityExhaustedError,
    CapacityReleaseError,
    ConcurrentModificationError,
    EmailMismatchError,
    InvalidBatchError,
    InvalidInviteTransitionError,
    InviteExpiredError,
    RegistrationEngineError,
    ResendCooldownError,
    ResendLimitError,
    RowValidationFailedError,
    TokenInvalidError,
    UploadLinkUnavailableError,
)

logger = structlog.get_logger(__name__)

REGISTRATION_ERROR_STATUS: dict[type[RegistrationEngineError], int] = {
    CapacityExhaustedError: 409,
    UploadLinkUnavailableError: 403,
    TokenInvalidError: 404,
    AlreadyClaimedError: 409,
    InviteExpiredError: 410,
    InvalidInviteTransitionError: 409,
    RowValidationFailedError: 422,
    ConcurrentModificationError: 409,
    CapacityReleaseError: 503,
    ResendLimitError: 429,
    ResendCooldownError: 429,
    EmailMismatchError: 403,
    AlreadyRegisteredError: 409,
    InvalidBatchError: 400,
}


def handle_general_exception(request: HttpRequest, exc: Exception | t.Type[Exception]) -> Response:
    """Handle a general exception.

    Args:
        request: The incoming HTTP request.
        exc: The exception.

    Returns:
        The response.
    """
    logger.exception("INTERNAL_SERVER_ERROR", exc_info=True, stack_info=True)
    data = {"detail": "Internal Server Error."}
    is_staff = getattr(request, "user", None) and request.user.is_staff
    if settings.DEBUG or is_staff:  # pragma: no cover
        data["traceback"] = traceback.format_exc()
    return Response(status=500, data=data)


def handle_django_validation_error(request: HttpRequest, exc: ValidationError | t.Type[ValidationError]) -> Response:
    """Handle a validation error.

    Args:
        request: The incoming HTTP request.
        exc: The exception.
    """
    logger.info("VALIDATION_ERROR", messages=getattr(exc, "messages", None))
    if hasattr(exc, "error_dict"):
        errors: dict[str, list[str]] = {k: [ee for e in v for ee in e] for k, v in exc.error_dict.items()}
    else:
        errors = {"__all__": list(getattr(exc, "messages", []))}
    return Response(status=400, data={"errors": errors})


def _status_for(exc: RegistrationEngineError) -> int:
    for klass in type(exc).__mro__:
        if klass in REGISTRATION_ERROR_STATUS:
            return REGISTRATION_ERROR_STATUS[klass]
    return 400


def handle_registration_engine_error(
    request: HttpRequest, exc: RegistrationEngineError | t.Type[RegistrationEngineError]
) -> Response:
    """Map group registration errors to ``{code, detail}`` responses."""
    assert isinstance(exc, RegistrationEngineError)
    status = _status_for(exc)
    data: dict[str, t.Any] = {"code": exc.code, "detail": exc.detail}
    if isinstance(exc, RowValidationFailedError):
        data["reason"] = exc.reason
    if isinstance(exc, CapacityExhaustedError):
        data["reason"] = exc.reason
    logger.info("registration_request_refused", code=exc.code, status_code=status, path=request.path)
    return Response(status=status, data=data)


def handle_resend_cooldown_error(
    request: HttpRequest, exc: ResendCooldownError | t.Type[ResendCooldownError]
) -> Response:
    """Like the generic handler, plus a ``Retry-After`` header."""
    response = handle_registration_engine_error(request, exc)
    assert isinstance(exc, ResendCooldownError)
    response["Retry-After"] = str(exc.retry_after)
    return response
