from django.db import models
from django.utils import timezone
from django.conf import settings

User = settings.AUTH_USER_MODEL


class DriverStatus:
    """Driver availability states. OFFERING and IN_WORK are owned by the dispatch engine."""
    ACTIVE = 'active'
    ON_BREAK = 'on_break'
    INACTIVE = 'inactive'
    OFFERING = 'offering'
    IN_WORK = 'in_work'

    CHOICES = [
        (ACTIVE, 'Active'),
        (ON_BREAK, 'On break'),
        (INACTIVE, 'Inactive'),
        (OFFERING, 'Offering'),
        (IN_WORK, 'In work'),
    ]

    # States a driver may pick for themselves
    SELF_SERVICE = (ACTIVE, ON_BREAK, INACTIVE)


class Driver(models.Model):
    """Courier profile, live position and the materialised head of the status ledger"""

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='driver')

    current_latitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    last_location_update = models.DateTimeField(null=True, blank=True)

    rating = models.DecimalField(max_digits=3, decimal_places=2, default=0)

    # Kept in step with the newest DriverStatusLog row by services.ledger
    latest_status = models.CharField(
        max_length=20, choices=DriverStatus.CHOICES, default=DriverStatus.INACTIVE, db_index=True
    )
    assignments_in_progress_count = models.PositiveIntegerField(default=0)
    latest_status_changed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'drivers'

    def __str__(self):
        return f"{self.user.username} ({self.latest_status})"

    @property
    def has_location(self) -> bool:
        return self.current_latitude is not None and self.current_longitude is not None


class DriverVehicle(models.Model):
    driver = models.ForeignKey(Driver, on_delete=models.CASCADE, related_name='vehicles')
    plate_number = models.CharField(max_length=20, unique=True)
    max_payload_g = models.PositiveIntegerField(help_text="Maximum cargo weight in grams")
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'driver_vehicles'

    def __str__(self):
        return f"{self.plate_number} ({self.max_payload_g} g)"


class DriverStatusLog(models.Model):
    """Append-only history of driver availability. Rows are never updated."""

    driver = models.ForeignKey(Driver, on_delete=models.CASCADE, related_name='status_logs')
    status = models.CharField(max_length=20, choices=DriverStatus.CHOICES)
    assignments_in_progress_count = models.PositiveIntegerField(default=0)
    metadata = models.JSONField(default=dict, blank=True)
    changed_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = 'driver_status_logs'
        ordering = ['-changed_at', '-id']

    def __str__(self):
        return f"Driver {self.driver_id} -> {self.status} @ {self.changed_at:%Y-%m-%d %H:%M:%S}"


class AvailabilityRule(models.Model):
    """Weekly working window. day_of_week follows date.weekday(): 0 is Monday."""

    DAY_CHOICES = [
        (0, 'Monday'),
        (1, 'Tuesday'),
        (2, 'Wednesday'),
        (3, 'Thursday'),
        (4, 'Friday'),
        (5, 'Saturday'),
        (6, 'Sunday'),
    ]

    driver = models.ForeignKey(Driver, on_delete=models.CASCADE, related_name='availability_rules')
    day_of_week = models.PositiveSmallIntegerField(choices=DAY_CHOICES)
    start_time = models.TimeField()
    end_time = models.TimeField()
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'driver_availability_rules'
        ordering = ['day_of_week', 'start_time']


class AvailabilityException(models.Model):
    """One-off unavailability on a given date, whole day or a time range."""

    driver = models.ForeignKey(Driver, on_delete=models.CASCADE, related_name='availability_exceptions')
    exception_date = models.DateField()
    is_unavailable_all_day = models.BooleanField(default=True)
    unavailable_start_time = models.TimeField(null=True, blank=True)
    unavailable_end_time = models.TimeField(null=True, blank=True)
    reason = models.CharField(max_length=255, blank=True)

    class Meta:
        db_table = 'driver_availability_exceptions'
        constraints = [
            models.UniqueConstraint(
                fields=['driver', 'exception_date'],
                name='unique_driver_exception_date'
            )
        ]
