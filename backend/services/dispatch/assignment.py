"""
One dispatch attempt for an order.

An attempt bumps the order's assignment counter, searches for candidates
excluding every driver already offered this order, and proposes to the best
one that is still available. The counter is capped: when the next attempt
would exceed the cap, or the last allowed attempt finds nobody, the order
is escalated instead.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from orders.models import Order, OrderStatus, OfferAttempt
from services.matching import find_candidates
from services.order_management import offer_protocol
from .config import dispatch_setting
from .escalation import escalate_order, escalate_order_locked

logger = logging.getLogger(__name__)

ACTION_PROPOSED = "proposed"
ACTION_NO_CANDIDATE = "no_candidate"
ACTION_ESCALATED = "escalated"
ACTION_SKIPPED = "skipped"

# Rejections that concern the order itself; trying another driver will not help.
ORDER_LEVEL_REJECTIONS = {
    offer_protocol.ORDER_NOT_FOUND,
    offer_protocol.ORDER_NOT_PENDING,
    offer_protocol.ORDER_ALREADY_ASSIGNED,
    offer_protocol.OFFER_ALREADY_OPEN,
}


@dataclass
class DispatchOutcome:
    order_id: int
    action: str
    attempt: Optional[int] = None
    driver_id: Optional[int] = None
    reason: str = ""


def _skip(order_id: int, reason: str) -> DispatchOutcome:
    logger.debug("Dispatch skipped for order %s: %s", order_id, reason)
    return DispatchOutcome(order_id=order_id, action=ACTION_SKIPPED, reason=reason)


def tried_driver_ids(order_id: int) -> set:
    """Every driver this order has ever been offered to."""
    return set(
        OfferAttempt.objects.filter(order_id=order_id).values_list("driver_id", flat=True)
    )


def dispatch_order(
    order_id: int,
    trigger: str = "",
    pickup_latitude: Optional[float] = None,
    pickup_longitude: Optional[float] = None,
    weight_g: Optional[int] = None,
    now=None,
) -> DispatchOutcome:
    """
    Run one dispatch attempt.

    Args:
        order_id: Order to dispatch
        trigger: What caused the attempt (event type or scan), for logs
        pickup_latitude / pickup_longitude / weight_g: Optional values carried
            by the triggering event; read from the order when missing
        now: Clock override

    Returns:
        DispatchOutcome describing what happened
    """
    now = now or timezone.now()
    max_attempts = dispatch_setting("MAX_ASSIGNMENT_ATTEMPTS")

    with transaction.atomic():
        order = Order.objects.select_for_update().filter(id=order_id).first()
        if order is None:
            return _skip(order_id, "order_not_found")
        if order.current_status != OrderStatus.PENDING:
            return _skip(order_id, f"order_{order.current_status}")
        if order.assigned_driver_id is not None:
            return _skip(order_id, "already_assigned")
        if order.offered_driver_id is not None:
            return _skip(order_id, "offer_open")
        if order.escalated_at is not None:
            return _skip(order_id, "escalated")

        attempt = order.assignment_attempt_count + 1
        if attempt > max_attempts:
            escalate_order_locked(order, now=now)
            return DispatchOutcome(order_id=order_id, action=ACTION_ESCALATED, attempt=order.assignment_attempt_count)

        order.assignment_attempt_count = attempt
        order.last_dispatch_at = now
        order.save(update_fields=["assignment_attempt_count", "last_dispatch_at", "updated_at"])

        if pickup_latitude is None or pickup_longitude is None:
            pickup_latitude = float(order.pickup_latitude)
            pickup_longitude = float(order.pickup_longitude)
        if weight_g is None:
            weight_g = order.total_weight_g()
        excluded = tried_driver_ids(order_id)

    candidates = find_candidates(
        pickup_latitude,
        pickup_longitude,
        weight_g,
        exclude_driver_ids=excluded,
        now=now,
    )
    logger.info(
        "Dispatch attempt %s/%s for order %s (%s): %s candidate(s), %s excluded",
        attempt, max_attempts, order_id, trigger or "manual", len(candidates), len(excluded),
    )

    for candidate in candidates:
        result = offer_protocol.propose(order_id, candidate.driver_id, attempt_number=attempt, now=now)
        if result.success:
            return DispatchOutcome(
                order_id=order_id,
                action=ACTION_PROPOSED,
                attempt=attempt,
                driver_id=candidate.driver_id,
            )
        if result.error_code in ORDER_LEVEL_REJECTIONS:
            return _skip(order_id, result.error_code)

    if attempt >= max_attempts and escalate_order(order_id, now=now):
        return DispatchOutcome(order_id=order_id, action=ACTION_ESCALATED, attempt=attempt)

    logger.info("No driver found for order %s on attempt %s", order_id, attempt)
    return DispatchOutcome(order_id=order_id, action=ACTION_NO_CANDIDATE, attempt=attempt, reason="no_candidate")
