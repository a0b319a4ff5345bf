import logging

from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger("orders.health")


def health_view(_request):
    """Readiness probe: database reachability plus the adapter mode in use."""
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        logger.warning("health check: database unreachable", exc_info=True)

    mode = "http" if getattr(settings, "USE_HTTP_ADAPTERS", False) else "stub"
    return JsonResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}, "adapters": {"mode": mode}}},
        status=200 if db_ok else 503,
    )
