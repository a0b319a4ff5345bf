"""Cancel abandoned pending orders and give their stock back.

Meant to be run periodically by an external scheduler (cron, a k8s
CronJob). Safe to run concurrently with checkout and with itself: each
cancellation is a conditional update, and only the run that cancels an
order releases its reservation.
"""

from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from apps.orders.providers import get_order_service


class Command(BaseCommand):
    help = "Expire pending orders older than the TTL and release their reserved stock."

    def add_arguments(self, parser):
        parser.add_argument(
            "--ttl-seconds",
            type=int,
            default=None,
            help="Age after which a pending order is abandoned (default: PENDING_ORDER_TTL_SECONDS).",
        )

    def handle(self, *args, **options):
        ttl = options["ttl_seconds"]
        if ttl is None:
            ttl = settings.PENDING_ORDER_TTL_SECONDS
        if ttl < 0:
            raise CommandError("--ttl-seconds must be >= 0")

        cutoff = timezone.now() - timedelta(seconds=ttl)
        result = get_order_service().expire_stale(cutoff)
        self.stdout.write(f"expired={result.expired} released={result.released}")
