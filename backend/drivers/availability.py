"""
Recurring availability schedule.

A date-specific exception wins over the weekly rules: a whole-day exception
means unavailable, a timed one means unavailable inside [start, end). Outside
an exception, the driver is available when an active weekly rule for that
weekday covers the time, start inclusive, end exclusive.
"""

import logging
from datetime import datetime
from typing import Optional

from django.utils import timezone

from drivers.models import AvailabilityException, AvailabilityRule

logger = logging.getLogger(__name__)


def has_schedule(driver_id: int) -> bool:
    """True if the driver has at least one active weekly rule."""
    return AvailabilityRule.objects.filter(driver_id=driver_id, is_active=True).exists()


def is_available_now(driver_id: int, at: Optional[datetime] = None) -> bool:
    """
    Whether the driver's schedule makes them available at `at` (default now).

    Times are compared in the project's TIME_ZONE. Database errors propagate so
    the caller's transaction rolls back.
    """
    at = timezone.localtime(at or timezone.now())
    check_date = at.date()
    check_time = at.time().replace(microsecond=0)

    exception = AvailabilityException.objects.filter(
        driver_id=driver_id, exception_date=check_date
    ).first()

    if exception is not None:
        if exception.is_unavailable_all_day:
            return False
        if (
            exception.unavailable_start_time is not None
            and exception.unavailable_end_time is not None
            and exception.unavailable_start_time <= check_time < exception.unavailable_end_time
        ):
            return False

    rules = AvailabilityRule.objects.filter(
        driver_id=driver_id,
        day_of_week=check_date.weekday(),
        is_active=True,
    ).order_by("start_time")

    for rule in rules:
        if rule.start_time <= check_time < rule.end_time:
            return True

    logger.debug("Driver %s not scheduled at %s", driver_id, at.isoformat())
    return False
