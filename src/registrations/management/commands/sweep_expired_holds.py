"""Expire overdue registration holds outside of the Celery beat schedule.

Usage:
    python manage.py sweep_expired_holds
    python manage.py sweep_expired_holds --batch-size 100 --recount
"""

import typing as t

from django.core.management.base import BaseCommand

from registrations.models import EventEdition
from registrations.service import capacity_ledger, expiry_service


class Command(BaseCommand):
    help = "Expire overdue pending holds and their open invites, and release lapsed claims."

    def add_arguments(self, parser: t.Any) -> None:
        """Add CLI arguments."""
        parser.add_argument(
            "--batch-size",
            type=int,
            default=None,
            help="Maximum number of holds examined (default: EXPIRY_SWEEP_BATCH_SIZE).",
        )
        parser.add_argument(
            "--recount",
            action="store_true",
            help="Also recompute capacity counters from active holds.",
        )

    def handle(self, *args: t.Any, **kwargs: t.Any) -> None:
        """Run one sweep."""
        result = expiry_service.sweep(batch_size=kwargs["batch_size"])
        self.stdout.write(
            self.style.SUCCESS(
                f"Expired {result.holds_expired} hold(s) and {result.invites_expired} invite(s)."
            )
        )
        released = expiry_service.release_lapsed_claims(batch_size=kwargs["batch_size"])
        self.stdout.write(self.style.SUCCESS(f"Released {released} lapsed claim(s)."))
        if kwargs["recount"]:
            corrected = sum(
                capacity_ledger.recount_reserved_capacity(edition) for edition in EventEdition.objects.all()
            )
            self.stdout.write(f"Corrected {corrected} capacity counter(s).")
