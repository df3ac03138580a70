import logging

from channels.layers import get_channel_layer
from django.db import connection
from django.utils import timezone
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from orders.models import ConsumerCheckpoint
from services.dispatch.config import dispatch_setting
from services.dispatch.event_log import get_redis_client

logger = logging.getLogger(__name__)


def _check_database():
    with connection.cursor() as cursor:
        cursor.execute("SELECT 1")
    return "healthy"


def _check_event_log():
    client = get_redis_client()
    client.ping()
    return {"status": "healthy", "length": client.xlen(dispatch_setting("EVENT_STREAM_KEY"))}


def _check_channel_layer():
    if get_channel_layer() is None:
        raise RuntimeError("no channel layer configured")
    return "healthy"


# Checks whose failure makes the service unhealthy
CHECKS = {
    "database": _check_database,
    "event_log": _check_event_log,
    "channels": _check_channel_layer,
}


@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    """Liveness of the database, the Redis event stream and the channel layer, plus worker progress."""
    services = {}
    healthy = True

    for name, check in CHECKS.items():
        try:
            services[name] = check()
        except Exception as e:
            logger.warning("Health check %s failed: %s", name, e)
            services[name] = f"unhealthy: {e}"
            healthy = False

    # Informational: no checkpoint until the worker has processed an event
    checkpoint = None
    if services["database"] == "healthy":
        checkpoint = ConsumerCheckpoint.objects.filter(consumer_name=dispatch_setting("CONSUMER_NAME")).first()
    services["dispatch_worker"] = {
        "last_event_id": checkpoint.last_event_id if checkpoint else None,
        "updated_at": checkpoint.updated_at.isoformat() if checkpoint else None,
    }

    return Response(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": timezone.now().isoformat(),
            "services": services,
        },
        status=200 if healthy else 503,
    )
