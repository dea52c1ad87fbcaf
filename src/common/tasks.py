"""Outgoing mail shared by the notification paths."""

import structlog
from celery import shared_task
from django.conf import settings
from django.core.mail import EmailMultiAlternatives

from common.utils import mask_email

logger = structlog.get_logger(__name__)


@shared_task(
    name="common.send_email",
    autoretry_for=(ConnectionError, TimeoutError),
    retry_backoff=True,
    max_retries=5,
)
def send_email(
    *,
    to: str | list[str],
    subject: str,
    body: str,
    html_body: str | None = None,
    reply_to: str | None = None,
    headers: dict[str, str] | None = None,
) -> int:
    """Send a single message to one or more recipients.

    Can be called inline or queued with ``.delay``. SMTP errors propagate so
    the caller decides whether a failed send is retried.

    Args:
        to: Recipient address or addresses.
        subject: Subject line.
        body: Plain text body.
        html_body: Optional HTML alternative.
        reply_to: Address replies should go to, e.g. the organizer of a batch.
        headers: Extra message headers.

    Returns:
        The number of messages handed to the backend.
    """
    recipients = [to] if isinstance(to, str) else to
    message = EmailMultiAlternatives(
        subject=subject,
        body=body,
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=recipients,
        reply_to=[reply_to] if reply_to else None,
        headers=headers,
    )
    if html_body:
        message.attach_alternative(html_body, "text/html")
    sent = message.send(fail_silently=False)
    logger.info("email_sent", recipients=[mask_email(r) for r in recipients], subject=subject)
    return sent
