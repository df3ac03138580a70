"""
Offer protocol: the state machine around an order's single open offer.

    NO_OFFER --propose--> OFFERED --accept--> ASSIGNED
                             |
                             +--refuse/expire/withdraw--> NO_OFFER

Every operation locks the order row (select_for_update) and re-checks its
offer fields inside the same transaction before writing. A caller that lost
a race gets a rejected OrderResult and nothing is written. Side effects
outside the database (events, pushes, websocket messages) run on commit.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any

from django.db import transaction
from django.utils import timezone

from drivers.models import Driver, DriverStatus, DriverVehicle
from orders.models import Order, OrderStatus, OfferAttempt
from realtime.notifications import notify_client_event, notify_driver_event
from realtime.push import enqueue_push
from services.dispatch.config import dispatch_setting
from services.dispatch.event_log import publish_on_commit
from services.dispatch.events import ManuallyAssigned, OfferAccepted, OfferExpired, OfferRefused
from services.ledger import append_driver_status, append_order_status

logger = logging.getLogger(__name__)


# Rejection codes
ORDER_NOT_FOUND = "order_not_found"
DRIVER_NOT_FOUND = "driver_not_found"
ORDER_NOT_PENDING = "order_not_pending"
ORDER_ALREADY_ASSIGNED = "order_already_assigned"
OFFER_ALREADY_OPEN = "offer_already_open"
DRIVER_NOT_AVAILABLE = "driver_not_available"
NO_CAPABLE_VEHICLE = "no_capable_vehicle"
STALE_OFFER = "stale_offer"
OFFER_NOT_FOR_DRIVER = "offer_not_for_driver"
OFFER_EXPIRED = "offer_expired"
OFFER_NOT_EXPIRED = "offer_not_expired"


@dataclass
class OrderResult:
    """Result object for order and offer operations."""
    success: bool
    order: Optional[Order] = None
    message: str = ""
    error_code: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


def _rejected(order, error_code: str, message: str) -> OrderResult:
    logger.info(
        "Offer operation rejected for order %s: %s",
        getattr(order, "id", None) if order is not None else "?",
        error_code,
    )
    return OrderResult(success=False, order=order, message=message, error_code=error_code)


def _lock_order(order_id: int) -> Optional[Order]:
    return Order.objects.select_for_update().filter(id=order_id).first()


def _lock_driver(driver_id: int) -> Optional[Driver]:
    return Driver.objects.select_for_update().select_related("user").filter(id=driver_id).first()


def _open_attempt(order: Order, driver_id: int) -> Optional[OfferAttempt]:
    return (
        OfferAttempt.objects.filter(order=order, driver_id=driver_id, status=OfferAttempt.STATUS_PENDING)
        .order_by("-sent_at", "-id")
        .first()
    )


# ---------------------- Out-of-band notifications ----------------------

def _notify_offer(order: Order, driver: Driver, expires_at) -> None:
    try:
        enqueue_push(
            driver.user.push_token,
            "New mission offer",
            f"Order #{order.id} is waiting for you. Respond before {expires_at:%H:%M:%S}.",
            {"type": "NEW_MISSION_OFFER", "order_id": order.id, "expires_at": expires_at.isoformat()},
        )
        notify_driver_event("mission_offer", order, driver, extra={"expires_at": expires_at.isoformat()})
    except Exception:
        logger.exception("Failed to notify driver %s of offer on order %s", driver.id, order.id)


def _notify_withdrawn(order: Order, driver: Driver, reason: str) -> None:
    try:
        notify_driver_event("offer_withdrawn", order, driver, extra={"reason": reason})
    except Exception:
        logger.exception("Failed to notify driver %s of withdrawn offer on order %s", driver.id, order.id)


def _notify_assigned(order: Order, driver: Driver) -> None:
    try:
        notify_driver_event("mission_assigned", order, driver)
        notify_client_event("order_accepted", order, "A driver is on the way to pick up your order.")
        enqueue_push(
            order.client.push_token,
            "Order accepted",
            f"A driver accepted order #{order.id}.",
            {"type": "ORDER_ACCEPTED", "order_id": order.id, "driver_id": driver.id},
        )
    except Exception:
        logger.exception("Failed to notify acceptance of order %s", order.id)


# ---------------------- Locked building blocks ----------------------

def revert_offering_driver(driver: Driver, reason: str, order_id: int) -> bool:
    """Put a driver back to active if they are still marked as offering. Caller holds the lock."""
    if driver.latest_status != DriverStatus.OFFERING:
        return False
    append_driver_status(
        driver,
        DriverStatus.ACTIVE,
        0,
        metadata={"reason": reason, "order_id": order_id},
    )
    return True


def clear_offer_locked(
    order: Order,
    attempt_status: str,
    reason: str,
    actor=None,
    now=None,
) -> Optional[Driver]:
    """
    Drop the open offer on a locked order, close its attempt and release the
    driver. Returns the driver that held the offer, or None if there was none.
    """
    if order.offered_driver_id is None:
        return None

    now = now or timezone.now()
    driver = _lock_driver(order.offered_driver_id)
    attempt = _open_attempt(order, order.offered_driver_id)

    order.offered_driver = None
    order.offer_expires_at = None
    order.save(update_fields=["offered_driver", "offer_expires_at", "updated_at"])

    if attempt is not None:
        attempt.status = attempt_status
        attempt.responded_at = now
        attempt.save(update_fields=["status", "responded_at"])

    if order.current_status == OrderStatus.PENDING:
        append_order_status(
            order,
            OrderStatus.PENDING,
            actor=actor,
            metadata={"reason": reason, "driver_id": getattr(driver, "id", None)},
            changed_at=now,
        )

    if driver is not None:
        revert_offering_driver(driver, reason, order.id)
    return driver


def propose_locked(
    order: Order,
    driver: Driver,
    ttl_seconds: Optional[int] = None,
    source: str = OfferAttempt.SOURCE_AUTO,
    actor=None,
    attempt_number: Optional[int] = None,
    now=None,
) -> OrderResult:
    """Open an offer on a locked order for a locked driver."""
    if order.current_status != OrderStatus.PENDING:
        return _rejected(order, ORDER_NOT_PENDING, "Order is no longer pending")
    if order.assigned_driver_id is not None:
        return _rejected(order, ORDER_ALREADY_ASSIGNED, "Order already has a driver")
    if order.offered_driver_id is not None:
        return _rejected(order, OFFER_ALREADY_OPEN, "Order already has an open offer")
    if driver.latest_status != DriverStatus.ACTIVE:
        return _rejected(order, DRIVER_NOT_AVAILABLE, f"Driver is {driver.latest_status}")

    now = now or timezone.now()
    ttl_seconds = ttl_seconds or dispatch_setting("OFFER_TTL_SECONDS")
    expires_at = now + timedelta(seconds=ttl_seconds)

    order.offered_driver = driver
    order.offer_expires_at = expires_at
    order.save(update_fields=["offered_driver", "offer_expires_at", "updated_at"])

    attempt = OfferAttempt.objects.create(
        order=order,
        driver=driver,
        attempt_number=attempt_number or max(order.assignment_attempt_count, 1),
        source=source,
        offered_by=actor,
        sent_at=now,
        expires_at=expires_at,
    )

    append_order_status(
        order,
        OrderStatus.PENDING,
        actor=actor,
        metadata={
            "reason": "offer_proposed",
            "driver_id": driver.id,
            "source": source,
            "expires_at": expires_at.isoformat(),
        },
        changed_at=now,
    )
    append_driver_status(
        driver,
        DriverStatus.OFFERING,
        0,
        metadata={"reason": "offer_received", "order_id": order.id},
        changed_at=now,
    )

    transaction.on_commit(lambda: _notify_offer(order, driver, expires_at))

    logger.info(
        "Offered order %s to driver %s until %s (%s, attempt %s)",
        order.id, driver.id, expires_at.isoformat(), source, attempt.attempt_number,
    )
    return OrderResult(
        success=True,
        order=order,
        message="Offer sent",
        extra={"attempt_id": attempt.id, "driver_id": driver.id, "expires_at": expires_at},
    )


# ---------------------- Public operations ----------------------

def propose(
    order_id: int,
    driver_id: int,
    ttl_seconds: Optional[int] = None,
    source: str = OfferAttempt.SOURCE_AUTO,
    actor=None,
    attempt_number: Optional[int] = None,
    now=None,
) -> OrderResult:
    """
    Offer an order to one driver for ttl_seconds.

    Preconditions: order pending, unassigned, without an open offer; driver
    currently active.
    """
    with transaction.atomic():
        order = _lock_order(order_id)
        if order is None:
            return _rejected(None, ORDER_NOT_FOUND, "Order not found")
        driver = _lock_driver(driver_id)
        if driver is None:
            return _rejected(order, DRIVER_NOT_FOUND, "Driver not found")
        return propose_locked(
            order,
            driver,
            ttl_seconds=ttl_seconds,
            source=source,
            actor=actor,
            attempt_number=attempt_number,
            now=now,
        )


def accept(order_id: int, driver_id: int, now=None) -> OrderResult:
    """
    Driver accepts the offer they hold.

    Succeeds only if the offer names this driver, has not expired and the
    order is still pending. Otherwise nothing changes.
    """
    now = now or timezone.now()
    with transaction.atomic():
        order = _lock_order(order_id)
        if order is None:
            return _rejected(None, ORDER_NOT_FOUND, "Order not found")
        if order.assigned_driver_id is not None:
            return _rejected(order, ORDER_ALREADY_ASSIGNED, "Order already has a driver")
        if order.offered_driver_id is None:
            return _rejected(order, STALE_OFFER, "There is no open offer on this order")
        if order.offered_driver_id != driver_id:
            return _rejected(order, OFFER_NOT_FOR_DRIVER, "This offer belongs to another driver")
        if order.current_status != OrderStatus.PENDING:
            return _rejected(order, ORDER_NOT_PENDING, "Order is no longer pending")
        if now >= order.offer_expires_at:
            return _rejected(order, OFFER_EXPIRED, "Offer has expired")

        driver = _lock_driver(driver_id)
        attempt = _open_attempt(order, driver_id)

        order.assigned_driver = driver
        order.offered_driver = None
        order.offer_expires_at = None
        order.save(update_fields=["assigned_driver", "offered_driver", "offer_expires_at", "updated_at"])

        append_order_status(
            order,
            OrderStatus.ACCEPTED,
            actor=driver.user,
            latitude=driver.current_latitude,
            longitude=driver.current_longitude,
            metadata={"reason": "offer_accepted", "driver_id": driver.id},
            changed_at=now,
        )
        append_driver_status(
            driver,
            DriverStatus.IN_WORK,
            driver.assignments_in_progress_count + 1,
            metadata={"reason": "offer_accepted", "order_id": order.id},
            changed_at=now,
        )

        if attempt is not None:
            attempt.status = OfferAttempt.STATUS_ACCEPTED
            attempt.responded_at = now
            attempt.save(update_fields=["status", "responded_at"])

        publish_on_commit(OfferAccepted(order_id=order.id, driver_id=driver.id, timestamp=now))
        transaction.on_commit(lambda: _notify_assigned(order, driver))

    logger.info("Driver %s accepted order %s", driver_id, order_id)
    return OrderResult(success=True, order=order, message="Mission accepted")


def _matching_offer(order: Order, driver_id: int, now) -> Optional[str]:
    """Return a rejection code if driver_id does not hold a live offer on order."""
    if order.offered_driver_id is None:
        return STALE_OFFER
    if order.offered_driver_id != driver_id:
        return OFFER_NOT_FOR_DRIVER
    if order.current_status != OrderStatus.PENDING or order.assigned_driver_id is not None:
        return ORDER_NOT_PENDING
    if now >= order.offer_expires_at:
        return OFFER_EXPIRED
    return None


def refuse(
    order_id: int,
    driver_id: int,
    reason: Optional[str] = None,
    publish: bool = True,
    now=None,
) -> OrderResult:
    """
    Driver declines the offer they hold.

    A refusal that no longer matches a live offer is a benign no-op: the
    driver's view is stale and the race was settled elsewhere.
    """
    now = now or timezone.now()
    with transaction.atomic():
        order = _lock_order(order_id)
        if order is None:
            return _rejected(None, ORDER_NOT_FOUND, "Order not found")

        mismatch = _matching_offer(order, driver_id, now)
        if mismatch is not None:
            return _rejected(order, mismatch, "Offer is no longer active")

        driver = clear_offer_locked(
            order,
            OfferAttempt.STATUS_REFUSED,
            "offer_refused",
            actor=None,
            now=now,
        )
        if publish:
            publish_on_commit(OfferRefused(order_id=order.id, driver_id=driver_id, reason=reason, timestamp=now))

    logger.info("Driver %s refused order %s (%s)", driver_id, order_id, reason or "no reason")
    return OrderResult(
        success=True,
        order=order,
        message="Offer refused",
        extra={"driver_id": getattr(driver, "id", driver_id)},
    )


def expire(order_id: int, driver_id: int, publish: bool = False, now=None) -> OrderResult:
    """
    Close an offer whose deadline has passed. Idempotent: an offer that is
    already gone, or held by someone else, is left alone.
    """
    now = now or timezone.now()
    with transaction.atomic():
        order = _lock_order(order_id)
        if order is None:
            return _rejected(None, ORDER_NOT_FOUND, "Order not found")
        if order.offered_driver_id != driver_id:
            return _rejected(order, STALE_OFFER, "Offer already cleared")
        if now < order.offer_expires_at:
            return _rejected(order, OFFER_NOT_EXPIRED, "Offer is still running")

        driver = clear_offer_locked(order, OfferAttempt.STATUS_EXPIRED, "offer_expired", now=now)
        if driver is not None:
            transaction.on_commit(lambda: _notify_withdrawn(order, driver, "expired"))
        if publish:
            publish_on_commit(OfferExpired(order_id=order.id, driver_id=driver_id, timestamp=now))

    logger.info("Offer on order %s for driver %s expired", order_id, driver_id)
    return OrderResult(success=True, order=order, message="Offer expired")


def withdraw_offer(
    order_id: int,
    reason: str,
    actor=None,
    driver_id: Optional[int] = None,
    now=None,
) -> OrderResult:
    """
    Force-clear the offer open on an order (terminal events, cancellations, cleanup).

    With driver_id, only an offer held by that driver is cleared.
    """
    now = now or timezone.now()
    with transaction.atomic():
        order = _lock_order(order_id)
        if order is None:
            return _rejected(None, ORDER_NOT_FOUND, "Order not found")
        if order.offered_driver_id is None:
            return OrderResult(success=True, order=order, message="No open offer", extra={"noop": True})
        if driver_id is not None and order.offered_driver_id != driver_id:
            return OrderResult(success=True, order=order, message="Offer held by another driver", extra={"noop": True})

        driver = clear_offer_locked(order, OfferAttempt.STATUS_WITHDRAWN, reason, actor=actor, now=now)
        if driver is not None:
            transaction.on_commit(lambda: _notify_withdrawn(order, driver, reason))

    logger.info("Withdrew offer on order %s (%s)", order_id, reason)
    return OrderResult(success=True, order=order, message="Offer withdrawn", extra={"driver_id": getattr(driver, "id", None)})


def manually_assign(order_id: int, driver_id: int, actor, ttl_seconds: Optional[int] = None, now=None) -> OrderResult:
    """
    Dispatcher override: offer the order to a chosen driver.

    Goes through the regular propose path, so the driver still has to accept
    before the deadline. An offer currently held by another driver is
    superseded.
    """
    now = now or timezone.now()
    with transaction.atomic():
        order = _lock_order(order_id)
        if order is None:
            return _rejected(None, ORDER_NOT_FOUND, "Order not found")
        if order.current_status != OrderStatus.PENDING:
            return _rejected(order, ORDER_NOT_PENDING, "Order is no longer pending")
        if order.assigned_driver_id is not None:
            return _rejected(order, ORDER_ALREADY_ASSIGNED, "Order already has a driver")
        if order.offered_driver_id == driver_id:
            return _rejected(order, OFFER_ALREADY_OPEN, "Driver already holds the offer")

        # Same lock order as propose: order, then driver
        driver = _lock_driver(driver_id)
        if driver is None:
            return _rejected(order, DRIVER_NOT_FOUND, "Driver not found")
        if driver.latest_status != DriverStatus.ACTIVE:
            return _rejected(order, DRIVER_NOT_AVAILABLE, f"Driver is {driver.latest_status}")

        weight = order.total_weight_g()
        has_vehicle = DriverVehicle.objects.filter(
            driver=driver, is_active=True, max_payload_g__gte=weight
        ).exists()
        if not has_vehicle:
            return _rejected(order, NO_CAPABLE_VEHICLE, f"Driver has no active vehicle for {weight} g")

        previous = clear_offer_locked(
            order,
            OfferAttempt.STATUS_SUPERSEDED,
            "superseded_by_manual_assignment",
            actor=actor,
            now=now,
        )
        if previous is not None:
            transaction.on_commit(lambda: _notify_withdrawn(order, previous, "reassigned"))

        result = propose_locked(
            order,
            driver,
            ttl_seconds=ttl_seconds,
            source=OfferAttempt.SOURCE_MANUAL,
            actor=actor,
            now=now,
        )
        if not result.success:
            transaction.set_rollback(True)
            return result

        publish_on_commit(ManuallyAssigned(
            order_id=order.id,
            driver_id=driver.id,
            actor_id=getattr(actor, "id", None),
            timestamp=now,
        ))

    logger.info("Order %s manually offered to driver %s by %s", order_id, driver_id, actor)
    return result


def claim_follow_up(order_id: int, driver_id: int, now=None) -> bool:
    """
    Mark the refused/expired attempt(s) of driver_id on order_id as handled.

    Returns True for exactly one caller; duplicates of the same refusal or
    expiry event get False and must not re-dispatch.
    """
    updated = OfferAttempt.objects.filter(
        order_id=order_id,
        driver_id=driver_id,
        status__in=[OfferAttempt.STATUS_REFUSED, OfferAttempt.STATUS_EXPIRED],
        followed_up_at__isnull=True,
    ).update(followed_up_at=now or timezone.now())
    return updated > 0
