"""Celery tasks for driver availability."""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def sync_driver_availability_task():
    """Move idle scheduled drivers between active and inactive as their shifts start and end."""
    from drivers.services import sync_all_driver_schedules

    changed = sync_all_driver_schedules()
    if changed:
        logger.info("Schedule sync changed %s driver(s)", changed)
    return changed
