"""
Append-only status ledgers for orders and drivers.

Every status change is a new OrderStatusLog / DriverStatusLog row. The newest
row is mirrored onto Order.current_status and Driver.latest_status (plus the
driver's in-progress counter) in the same transaction, so readers never need
to query the ledger to learn the current state.
"""

import logging
from typing import Any, Dict, Optional

from django.db import transaction
from django.utils import timezone

from drivers.models import Driver, DriverStatus, DriverStatusLog
from orders.models import Order, OrderStatus, OrderStatusLog

logger = logging.getLogger(__name__)


class LedgerInvariantError(Exception):
    """Raised when a driver status row would break the in_work/counter pairing."""
    pass


def append_order_status(
    order: Order,
    status: str,
    actor=None,
    latitude=None,
    longitude=None,
    metadata: Optional[Dict[str, Any]] = None,
    changed_at=None,
) -> OrderStatusLog:
    """Record a new order status and mirror it onto the order row."""
    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("append_order_status must run inside transaction.atomic()")

    changed_at = changed_at or timezone.now()
    entry = OrderStatusLog.objects.create(
        order=order,
        status=status,
        changed_at=changed_at,
        actor=actor,
        latitude=latitude,
        longitude=longitude,
        metadata=metadata or {},
    )

    if order.current_status != status:
        order.current_status = status
        order.save(update_fields=["current_status", "updated_at"])

    logger.debug("Order %s -> %s (%s)", order.id, status, (metadata or {}).get("reason", ""))
    return entry


def append_driver_status(
    driver: Driver,
    status: str,
    assignments_in_progress_count: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    changed_at=None,
) -> DriverStatusLog:
    """
    Record a new driver status and mirror it onto the driver row.

    When assignments_in_progress_count is omitted the driver's current counter
    is carried over. The pair must satisfy: in_work iff count > 0.
    """
    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("append_driver_status must run inside transaction.atomic()")

    count = driver.assignments_in_progress_count if assignments_in_progress_count is None else assignments_in_progress_count
    if count < 0:
        raise LedgerInvariantError(f"Driver {driver.id}: negative in-progress count {count}")
    if status == DriverStatus.IN_WORK and count == 0:
        raise LedgerInvariantError(f"Driver {driver.id}: in_work requires at least one assignment")
    if status != DriverStatus.IN_WORK and count > 0:
        raise LedgerInvariantError(
            f"Driver {driver.id}: status {status} with {count} assignment(s) in progress"
        )

    changed_at = changed_at or timezone.now()
    entry = DriverStatusLog.objects.create(
        driver=driver,
        status=status,
        assignments_in_progress_count=count,
        metadata=metadata or {},
        changed_at=changed_at,
    )

    driver.latest_status = status
    driver.assignments_in_progress_count = count
    driver.latest_status_changed_at = changed_at
    driver.save(update_fields=["latest_status", "assignments_in_progress_count", "latest_status_changed_at"])

    logger.debug("Driver %s -> %s (count=%s)", driver.id, status, count)
    return entry


def assigned_in_progress_count(driver: Driver) -> int:
    """Number of orders assigned to the driver that have not reached a terminal status."""
    return Order.objects.filter(
        assigned_driver=driver,
        current_status__in=OrderStatus.IN_PROGRESS,
    ).count()
