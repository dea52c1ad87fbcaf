"""Request-scoped logging context."""

import typing as t
import uuid

import structlog
from django.http import HttpRequest, HttpResponse

REQUEST_ID_HEADER = "X-Request-ID"


class StructlogContextMiddleware:
    """Binds request metadata to every log event emitted while handling a request.

    A well-formed UUID sent by the caller in ``X-Request-ID`` is reused so the
    request can be followed across services. Anything else is replaced by a
    fresh id. The id is echoed back on the response.
    """

    def __init__(self, get_response: t.Callable[[HttpRequest], HttpResponse]) -> None:
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        request_id = self._get_request_id(request)
        structlog.contextvars.clear_contextvars()

        context: dict[str, t.Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.path,
            "ip_address": self._get_client_ip(request),
        }
        if hasattr(request, "user") and request.user.is_authenticated:
            context["user_id"] = str(request.user.pk)
        structlog.contextvars.bind_contextvars(**context)

        try:
            response = self.get_response(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    def _get_request_id(request: HttpRequest) -> str:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        try:
            return str(uuid.UUID(incoming))
        except ValueError:
            return str(uuid.uuid4())

    @staticmethod
    def _get_client_ip(request: HttpRequest) -> str:
        forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR")
        if forwarded_for:
            return str(forwarded_for.split(",")[0].strip())
        return str(request.META.get("REMOTE_ADDR", "unknown"))
