"""
Order intake and mission lifecycle after assignment.

This module contains the business logic for creating orders, moving an
assigned mission through pickup and delivery, and cancelling orders from the
dispatcher side. Finishing a mission releases the driver: the in-progress
counter drops and, at zero, the weekly schedule decides active or inactive.
"""

import logging
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from django.db import transaction
from django.utils import timezone

from drivers.availability import has_schedule, is_available_now
from drivers.models import Driver, DriverStatus
from orders.models import OfferAttempt, Order, OrderStatus, Package
from realtime.notifications import notify_client_event, notify_driver_event
from realtime.push import enqueue_push
from services.dispatch.event_log import publish_on_commit
from services.dispatch.events import CancelledByAdmin, Completed, Failed, NewOrderReady
from services.ledger import append_driver_status, append_order_status
from .exceptions import InvalidMissionTransitionError, OrderNotFoundError
from .offer_protocol import OrderResult, clear_offer_locked

logger = logging.getLogger(__name__)


# Allowed driver-reported progress. FAILED is reachable from any in-progress status.
MISSION_TRANSITIONS = {
    OrderStatus.ACCEPTED: {OrderStatus.AT_PICKUP},
    OrderStatus.AT_PICKUP: {OrderStatus.EN_ROUTE},
    OrderStatus.EN_ROUTE: {OrderStatus.AT_DELIVERY},
    OrderStatus.AT_DELIVERY: {OrderStatus.SUCCESS},
}


# ===================== Client Operations =====================

def create_order(
    client,
    pickup_latitude: Decimal,
    pickup_longitude: Decimal,
    delivery_latitude: Decimal,
    delivery_longitude: Decimal,
    packages: Iterable[Mapping],
    pickup_address: str = "",
    delivery_address: str = "",
) -> OrderResult:
    """
    Create a pending order with its packages and announce it to the dispatcher.

    Args:
        client: User placing the order
        pickup_latitude / pickup_longitude: Pickup point
        delivery_latitude / delivery_longitude: Drop-off point
        packages: Iterable of {"weight_g", "quantity", "description"} mappings
        pickup_address / delivery_address: Free-text addresses

    Returns:
        OrderResult with the created order
    """
    with transaction.atomic():
        order = Order.objects.create(
            client=client,
            pickup_latitude=pickup_latitude,
            pickup_longitude=pickup_longitude,
            pickup_address=pickup_address,
            delivery_latitude=delivery_latitude,
            delivery_longitude=delivery_longitude,
            delivery_address=delivery_address,
            current_status=OrderStatus.PENDING,
        )
        Package.objects.bulk_create([
            Package(
                order=order,
                description=package.get("description", ""),
                weight_g=package["weight_g"],
                quantity=package.get("quantity", 1),
            )
            for package in packages
        ])
        append_order_status(order, OrderStatus.PENDING, actor=client, metadata={"reason": "order_created"})

        total_weight = order.total_weight_g()
        publish_on_commit(NewOrderReady(
            order_id=order.id,
            pickup_latitude=float(pickup_latitude),
            pickup_longitude=float(pickup_longitude),
            total_weight_g=total_weight,
        ))

    logger.info("Order %s created by %s (%s g)", order.id, client, total_weight)
    return OrderResult(
        success=True,
        order=order,
        message="Looking for a driver...",
        extra={"total_weight_g": total_weight},
    )


# ===================== Driver Operations =====================

def release_driver_locked(driver: Driver, reason: str, order_id: int, now=None) -> str:
    """
    One mission fewer for a locked driver. Returns the driver's new status.
    """
    now = now or timezone.now()
    remaining = driver.assignments_in_progress_count - 1
    if remaining < 0:
        logger.error("Driver %s released from order %s with no mission in progress", driver.id, order_id)
        remaining = 0

    if remaining > 0:
        status = DriverStatus.IN_WORK
    elif not has_schedule(driver.id) or is_available_now(driver.id, now):
        status = DriverStatus.ACTIVE
    else:
        status = DriverStatus.INACTIVE

    append_driver_status(
        driver,
        status,
        remaining,
        metadata={"reason": reason, "order_id": order_id},
        changed_at=now,
    )
    return status


def advance_mission(
    order_id: int,
    driver: Driver,
    new_status: str,
    latitude=None,
    longitude=None,
    reason: Optional[str] = None,
) -> OrderResult:
    """
    Record mission progress reported by the assigned driver.

    Raises:
        OrderNotFoundError: order missing or not assigned to this driver
        InvalidMissionTransitionError: new_status not reachable from the current one
    """
    now = timezone.now()
    with transaction.atomic():
        order = Order.objects.select_for_update().filter(id=order_id, assigned_driver=driver).first()
        if order is None:
            raise OrderNotFoundError("Mission not found")

        current = order.current_status
        allowed = set(MISSION_TRANSITIONS.get(current, set()))
        if current in OrderStatus.IN_PROGRESS:
            allowed.add(OrderStatus.FAILED)
        if new_status not in allowed:
            raise InvalidMissionTransitionError(f"Cannot move mission from {current} to {new_status}")

        metadata = {"reason": reason} if reason else {}
        append_order_status(
            order,
            new_status,
            actor=driver.user,
            latitude=latitude if latitude is not None else driver.current_latitude,
            longitude=longitude if longitude is not None else driver.current_longitude,
            metadata=metadata,
            changed_at=now,
        )

        if new_status in OrderStatus.TERMINAL:
            locked_driver = Driver.objects.select_for_update().get(pk=driver.pk)
            release_driver_locked(locked_driver, f"mission_{new_status}", order.id, now=now)
            if new_status == OrderStatus.SUCCESS:
                publish_on_commit(Completed(order_id=order.id, driver_id=driver.id, timestamp=now))
            else:
                publish_on_commit(Failed(order_id=order.id, driver_id=driver.id, reason=reason, timestamp=now))

        transaction.on_commit(lambda: notify_client_event(
            "order_status_changed", order, extra={"driver_id": driver.id}
        ))

    logger.info("Mission %s: %s -> %s by driver %s", order_id, current, new_status, driver.id)
    return OrderResult(success=True, order=order, message=f"Mission is now {new_status}")


# ===================== Dispatcher Operations =====================

def cancel_order_by_admin(order_id: int, actor, reason: str = "") -> OrderResult:
    """
    Cancel a non-terminal order. Any open offer is withdrawn and an assigned
    driver is released.

    Raises:
        OrderNotFoundError: unknown order
        InvalidMissionTransitionError: order already finished
    """
    now = timezone.now()
    with transaction.atomic():
        order = Order.objects.select_for_update().select_related("client").filter(id=order_id).first()
        if order is None:
            raise OrderNotFoundError("Order not found")
        if order.is_terminal:
            raise InvalidMissionTransitionError(f"Order is already {order.current_status}")

        withdrawn_driver = clear_offer_locked(order, OfferAttempt.STATUS_WITHDRAWN, "cancelled_by_admin", actor=actor, now=now)

        assigned_driver = None
        if order.assigned_driver_id is not None and order.current_status in OrderStatus.IN_PROGRESS:
            assigned_driver = Driver.objects.select_for_update().select_related("user").get(pk=order.assigned_driver_id)
            release_driver_locked(assigned_driver, "mission_cancelled_by_admin", order.id, now=now)

        order.cancellation_reason = reason or None
        order.save(update_fields=["cancellation_reason", "updated_at"])
        append_order_status(
            order,
            OrderStatus.CANCELLED,
            actor=actor,
            metadata={"reason": "cancelled_by_admin", "detail": reason},
            changed_at=now,
        )

        publish_on_commit(CancelledByAdmin(
            order_id=order.id,
            driver_id=order.assigned_driver_id,
            actor_id=getattr(actor, "id", None),
            reason=reason or None,
            timestamp=now,
        ))

        affected = assigned_driver or withdrawn_driver

        def _notify():
            notify_client_event("order_cancelled", order, reason or "Your order was cancelled by our team.")
            enqueue_push(
                order.client.push_token,
                "Order cancelled",
                f"Order #{order.id} was cancelled.",
                {"type": "ORDER_CANCELLED", "order_id": order.id},
            )
            if affected is not None:
                notify_driver_event("mission_cancelled", order, affected, reason)

        transaction.on_commit(_notify)

    logger.info("Order %s cancelled by %s (%s)", order_id, actor, reason or "no reason")
    return OrderResult(success=True, order=order, message="Order cancelled")
