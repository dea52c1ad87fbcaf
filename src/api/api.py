from django.conf import settings
from django.core.exceptions import ValidationError
from django.http import HttpRequest
from ninja_extra import NinjaExtraAPI

from common.schema import ResponseOk, VersionResponse
from common.throttling import AnonDefaultThrottle, UserDefaultThrottle
from registrations.controllers import GROUP_REGISTRATION_CONTROLLERS
from registrations.exceptions import RegistrationEngineError, ResendCooldownError

from .exception_handlers import (
    handle_django_validation_error,
    handle_general_exception,
    handle_registration_engine_error,
    handle_resend_cooldown_error,
)

api = NinjaExtraAPI(
    title="Roster API",
    docs_url="/docs",
    version=settings.VERSION,
    description=f"Roster group registration API {settings.VERSION}",
    app_name=f"roster-api-{settings.VERSION}",
    urls_namespace="api",
    servers=[
        {"url": settings.SERVICE_URL, "description": settings.SERVICE_DESCRIPTION},
    ],
    throttle=[AnonDefaultThrottle(), UserDefaultThrottle()],
)


@api.get("/version", tags=["Version"], response={200: VersionResponse})
def version(request: HttpRequest) -> tuple[int, VersionResponse]:
    """Get the API version.

    Args:
        request: The incoming HTTP request.

    Returns:
        The response status code and message.
    """
    return 200, VersionResponse(version=settings.VERSION)


@api.get("/healthcheck", tags=["Healthcheck"], response={200: ResponseOk})
def healthcheck(request: HttpRequest) -> tuple[int, ResponseOk]:
    """Check the health of the API."""
    return 200, ResponseOk()


api.register_controllers(*GROUP_REGISTRATION_CONTROLLERS)

EXCEPTION_HANDLERS = {
    Exception: handle_general_exception,
    ValidationError: handle_django_validation_error,
    RegistrationEngineError: handle_registration_engine_error,
    ResendCooldownError: handle_resend_cooldown_error,
}

for exc, handler in EXCEPTION_HANDLERS.items():
    api.add_exception_handler(exc, handler)  # type: ignore[arg-type]
