import logging
from typing import Any, Dict, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from drivers.availability import has_schedule, is_available_now
from drivers.models import Driver, DriverStatus
from realtime.push import enqueue_push
from services.ledger import append_driver_status

logger = logging.getLogger(__name__)


class DriverBusyError(Exception):
    """Raised when a driver tries to change availability while holding an offer or missions."""
    pass


class InvalidDriverStatusError(Exception):
    pass


# DRIVER STATUS UPDATE
def set_driver_availability(driver: Driver, new_status: str, metadata: Optional[Dict[str, Any]] = None) -> Driver:
    """
    Driver-initiated toggle between active, on_break and inactive.

    Rejected while the driver is offering or in_work; both are only ever
    entered and left through the offer protocol.
    """
    if new_status not in DriverStatus.SELF_SERVICE:
        raise InvalidDriverStatusError(f"Drivers cannot set status '{new_status}' themselves")

    with transaction.atomic():
        locked = Driver.objects.select_for_update().get(pk=driver.pk)
        if locked.latest_status == DriverStatus.IN_WORK:
            raise DriverBusyError("Finish your current missions before changing availability")
        if locked.latest_status == DriverStatus.OFFERING:
            raise DriverBusyError("Answer your pending offer before changing availability")
        if locked.latest_status == new_status:
            return locked

        append_driver_status(
            locked,
            new_status,
            0,
            metadata={"reason": "driver_toggle", **(metadata or {})},
        )

    logger.info("Driver %s set availability to %s", driver.id, new_status)
    return locked


def update_driver_location(driver: Driver, lat, lon) -> Driver:
    """
    Update driver location. Used by the HTTP endpoint and the driver websocket.
    """
    driver.current_latitude = lat
    driver.current_longitude = lon
    driver.last_location_update = timezone.now()
    driver.save(update_fields=["current_latitude", "current_longitude", "last_location_update"])
    return driver


# SCHEDULE SYNC
def sync_driver_schedule(driver_id: int, now=None) -> Optional[str]:
    """
    Flip an idle driver between active and inactive to follow their weekly
    schedule. Drivers without a schedule, or who are on break, offering or in
    work, are left alone. Returns the new status when it changed.
    """
    now = now or timezone.now()
    if not has_schedule(driver_id):
        return None

    target = DriverStatus.ACTIVE if is_available_now(driver_id, now) else DriverStatus.INACTIVE

    with transaction.atomic():
        driver = Driver.objects.select_for_update().select_related("user").filter(pk=driver_id).first()
        if driver is None:
            return None
        if driver.latest_status not in (DriverStatus.ACTIVE, DriverStatus.INACTIVE):
            return None
        if driver.latest_status == target:
            return None

        append_driver_status(driver, target, 0, metadata={"reason": "schedule_sync"}, changed_at=now)
        token = driver.user.push_token
        transaction.on_commit(lambda: enqueue_push(
            token,
            "Availability updated",
            f"Your status is now {target} according to your schedule.",
            {"type": "AVAILABILITY_SYNC", "driver_id": driver_id, "status": target},
        ))

    logger.info("Driver %s moved to %s by schedule", driver_id, target)
    return target


def sync_all_driver_schedules(now=None) -> int:
    """
    Run sync_driver_schedule for every idle driver that has a schedule.

    A failed lookup for one driver is logged and leaves that driver unchanged.
    """
    now = now or timezone.now()
    changed = 0
    driver_ids = (
        Driver.objects.filter(
            latest_status__in=[DriverStatus.ACTIVE, DriverStatus.INACTIVE],
            availability_rules__is_active=True,
        )
        .values_list("id", flat=True)
        .distinct()
    )
    for driver_id in driver_ids:
        try:
            if sync_driver_schedule(driver_id, now=now):
                changed += 1
        except DatabaseError:
            logger.exception("Schedule sync failed for driver %s", driver_id)
    return changed
