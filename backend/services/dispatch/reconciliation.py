"""
Periodic reconciliation of offer state.

The scan finds offers whose deadline has passed and emits offer_expired for
each, so the worker expires them and moves on to the next candidate. It also
cleans offers left on orders that are no longer waiting for a driver, and
re-announces pending orders whose dispatch stalled (no candidate found, or
an event lost while the log was unreachable).
"""

import logging
from datetime import timedelta
from typing import Optional, Tuple

from django.db import close_old_connections
from django.db.models import Q
from django.utils import timezone

from orders.models import Order, OrderStatus
from services.order_management.offer_protocol import withdraw_offer
from .config import dispatch_setting
from .event_log import publish_event
from .events import NewOrderReady, OfferExpired

logger = logging.getLogger(__name__)


def scan_expired_offers(now=None, batch_size: Optional[int] = None) -> Tuple[int, int, int]:
    """
    Run one reconciliation pass.

    Returns a tuple of (expired_count, cleaned_count, retried_count).
    """
    now = now or timezone.now()
    batch_size = batch_size or dispatch_setting("EXPIRATION_SCAN_BATCH_SIZE")

    expired_count = 0
    cleaned_count = 0

    overdue = (
        Order.objects.filter(offered_driver__isnull=False, offer_expires_at__lte=now)
        .order_by("offer_expires_at", "id")
        .values_list("id", "offered_driver_id", "current_status", "assigned_driver_id")[:batch_size]
    )

    for order_id, driver_id, status, assigned_driver_id in overdue:
        if status != OrderStatus.PENDING or assigned_driver_id is not None:
            result = withdraw_offer(order_id, "stale_offer_cleanup", now=now)
            if result.success and not (result.extra or {}).get("noop"):
                cleaned_count += 1
            continue

        if publish_event(OfferExpired(order_id=order_id, driver_id=driver_id, timestamp=now)):
            expired_count += 1

    retried_count = retry_stalled_orders(now=now, batch_size=batch_size)

    # Close stale DB connections for long-running workers
    close_old_connections()

    if expired_count or cleaned_count or retried_count:
        logger.info(
            "Offer scan: %s expired, %s cleaned, %s re-dispatched",
            expired_count, cleaned_count, retried_count,
        )
    return expired_count, cleaned_count, retried_count


def retry_stalled_orders(now=None, batch_size: Optional[int] = None) -> int:
    """
    Publish new_order_ready again for pending orders with no offer whose
    last dispatch attempt is older than RETRY_STALLED_AFTER_SECONDS.

    Each order is claimed with a conditional update of last_dispatch_at so
    concurrent scanners do not announce it twice.
    """
    now = now or timezone.now()
    batch_size = batch_size or dispatch_setting("EXPIRATION_SCAN_BATCH_SIZE")
    cutoff = now - timedelta(seconds=dispatch_setting("RETRY_STALLED_AFTER_SECONDS"))

    stalled = (
        Order.objects.filter(
            current_status=OrderStatus.PENDING,
            assigned_driver__isnull=True,
            offered_driver__isnull=True,
            escalated_at__isnull=True,
        )
        .filter(Q(last_dispatch_at__lt=cutoff) | Q(last_dispatch_at__isnull=True, created_at__lt=cutoff))
        .order_by("created_at", "id")
        .values_list("id", "last_dispatch_at")[:batch_size]
    )

    retried = 0
    for order_id, last_dispatch_at in stalled:
        claimed = Order.objects.filter(id=order_id, last_dispatch_at=last_dispatch_at).update(last_dispatch_at=now)
        if not claimed:
            continue
        if publish_event(NewOrderReady(order_id=order_id, timestamp=now)):
            retried += 1
    return retried
