"""
Candidate search for an order's pickup point.

Greedy by design: the best-rated nearby driver that can carry the load gets
the offer. Filtering happens in two passes, a bounding box in SQL and then
the exact haversine distance in Python.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional

from django.db.models import Exists, OuterRef
from django.utils import timezone

from common.utils import bounding_box, calculate_distance
from drivers.models import Driver, DriverStatus, DriverVehicle
from services.dispatch.config import dispatch_setting

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A driver eligible for an offer, with its ranking inputs."""
    driver: Driver
    distance_meters: float
    rating: float

    @property
    def driver_id(self) -> int:
        return self.driver.id


def find_candidates(
    latitude: float,
    longitude: float,
    weight_g: int,
    radius_meters: Optional[float] = None,
    exclude_driver_ids: Iterable[int] = (),
    now=None,
) -> List[Candidate]:
    """
    Return every eligible driver for a pickup, best first.

    Eligible means: latest status active, location reported within the
    freshness window and within radius_meters of the pickup, at least one
    active vehicle able to carry weight_g, and not in exclude_driver_ids.
    Ranking is rating descending, then distance ascending.
    """
    now = now or timezone.now()
    if radius_meters is None:
        radius_meters = dispatch_setting("SEARCH_RADIUS_METERS")
    freshness = timedelta(seconds=dispatch_setting("LOCATION_FRESHNESS_SECONDS"))
    min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_meters)

    capable_vehicle = DriverVehicle.objects.filter(
        driver=OuterRef("pk"),
        is_active=True,
        max_payload_g__gte=weight_g,
    )

    queryset = (
        Driver.objects.select_related("user")
        .filter(
            latest_status=DriverStatus.ACTIVE,
            current_latitude__isnull=False,
            current_longitude__isnull=False,
            last_location_update__gte=now - freshness,
            current_latitude__gte=min_lat,
            current_latitude__lte=max_lat,
            current_longitude__gte=min_lon,
            current_longitude__lte=max_lon,
        )
        .filter(Exists(capable_vehicle))
        .exclude(id__in=list(exclude_driver_ids))
    )

    candidates: List[Candidate] = []
    for driver in queryset:
        distance = calculate_distance(
            float(latitude),
            float(longitude),
            float(driver.current_latitude),
            float(driver.current_longitude),
        )
        if distance <= float(radius_meters):
            candidates.append(Candidate(driver=driver, distance_meters=distance, rating=float(driver.rating)))

    candidates.sort(key=lambda c: (-c.rating, c.distance_meters))

    logger.debug(
        "Candidate search at (%s, %s) weight=%sg radius=%sm: %s eligible",
        latitude, longitude, weight_g, radius_meters, len(candidates),
    )
    return candidates


def find_best_candidate(
    latitude: float,
    longitude: float,
    weight_g: int,
    radius_meters: Optional[float] = None,
    exclude_driver_ids: Iterable[int] = (),
    now=None,
) -> Optional[Candidate]:
    """Top-ranked candidate or None."""
    candidates = find_candidates(
        latitude,
        longitude,
        weight_g,
        radius_meters=radius_meters,
        exclude_driver_ids=exclude_driver_ids,
        now=now,
    )
    return candidates[0] if candidates else None
