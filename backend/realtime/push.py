"""
Push-notification gateway seam.

enqueue_push() hands a message to Celery; the worker-side task delivers it
through the backend configured in PUSH_GATEWAY_BACKEND. Transport (FCM, APNs)
is up to that backend; the default one only logs.
"""

import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.utils.module_loading import import_string
from kombu.exceptions import OperationalError

logger = logging.getLogger(__name__)


class LoggingPushGateway:
    """Development backend: records the message instead of sending it."""

    def send(self, token: str, title: str, body: str, data: Dict[str, Any]) -> bool:
        logger.info("PUSH -> %s: %s | %s | %s", token, title, body, data)
        return True


def get_push_gateway():
    backend = getattr(settings, "PUSH_GATEWAY_BACKEND", "realtime.push.LoggingPushGateway")
    return import_string(backend)()


def enqueue_push(token: Optional[str], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> bool:
    """
    Queue a push message. Returns False when there is no token or the broker
    refused the task; callers treat that as a soft failure.
    """
    if not token:
        logger.debug("No push token, skipping '%s'", title)
        return False

    from orders.tasks import deliver_push_notification

    try:
        deliver_push_notification.delay(token, title, body, data or {})
    except OperationalError:
        logger.exception("Could not queue push notification '%s'", title)
        return False
    return True
