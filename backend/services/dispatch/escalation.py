"""Hand-off of orders that ran out of automatic assignment attempts."""

import logging

from django.db import transaction
from django.utils import timezone

from orders.models import Order, OrderStatus
from realtime.notifications import notify_client_event
from services.ledger import append_order_status
from .event_log import publish_on_commit
from .events import CancelledBySystem, REASON_NO_DRIVER_FOUND

logger = logging.getLogger(__name__)


def escalate_order_locked(order: Order, now=None) -> bool:
    """
    Flag a locked pending order for manual handling.

    The order stays pending so a dispatcher can still assign it by hand, but
    automatic dispatch skips it from now on. Returns False if the order was
    already escalated or is no longer waiting for a driver.
    """
    if order.escalated_at is not None:
        return False
    if order.current_status != OrderStatus.PENDING or order.assigned_driver_id is not None:
        return False

    now = now or timezone.now()
    order.escalated_at = now
    order.save(update_fields=["escalated_at", "updated_at"])
    append_order_status(
        order,
        OrderStatus.PENDING,
        metadata={
            "reason": "escalated",
            "detail": REASON_NO_DRIVER_FOUND,
            "attempts": order.assignment_attempt_count,
        },
        changed_at=now,
    )

    publish_on_commit(CancelledBySystem(order_id=order.id, reason=REASON_NO_DRIVER_FOUND, timestamp=now))
    transaction.on_commit(lambda: _notify_escalated(order))

    logger.warning(
        "Order %s escalated after %s attempt(s): %s",
        order.id, order.assignment_attempt_count, REASON_NO_DRIVER_FOUND,
    )
    return True


def escalate_order(order_id: int, now=None) -> bool:
    with transaction.atomic():
        order = Order.objects.select_for_update().filter(id=order_id).first()
        if order is None:
            return False
        return escalate_order_locked(order, now=now)


def _notify_escalated(order: Order) -> None:
    try:
        notify_client_event(
            "order_escalated",
            order,
            "No driver is available right now. Our team will assign your order manually.",
        )
    except Exception:
        logger.exception("Failed to notify client of escalated order %s", order.id)
