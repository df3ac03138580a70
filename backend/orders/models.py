from django.db import models
from django.db.models import F, Sum
from django.conf import settings
from django.utils import timezone


class OrderStatus:
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    AT_PICKUP = 'at_pickup'
    EN_ROUTE = 'en_route'
    AT_DELIVERY = 'at_delivery'
    SUCCESS = 'success'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    CHOICES = [
        (PENDING, 'Pending'),
        (ACCEPTED, 'Accepted'),
        (AT_PICKUP, 'At pickup'),
        (EN_ROUTE, 'En route'),
        (AT_DELIVERY, 'At delivery'),
        (SUCCESS, 'Delivered'),
        (FAILED, 'Failed'),
        (CANCELLED, 'Cancelled'),
    ]

    TERMINAL = (SUCCESS, FAILED, CANCELLED)
    IN_PROGRESS = (ACCEPTED, AT_PICKUP, EN_ROUTE, AT_DELIVERY)


class Order(models.Model):
    """Delivery order. The offer_* fields hold the single open offer, if any."""

    client = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='orders'
    )

    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_address = models.TextField(blank=True, default='')

    delivery_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    delivery_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    delivery_address = models.TextField(blank=True, default='')

    # Materialised head of the OrderStatusLog ledger
    current_status = models.CharField(
        max_length=20, choices=OrderStatus.CHOICES, default=OrderStatus.PENDING, db_index=True
    )

    # Open offer: both set or both null, only while pending
    offered_driver = models.ForeignKey(
        'drivers.Driver',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='open_offers'
    )
    offer_expires_at = models.DateTimeField(null=True, blank=True, db_index=True)

    assignment_attempt_count = models.PositiveIntegerField(default=0)
    assigned_driver = models.ForeignKey(
        'drivers.Driver',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assigned_orders'
    )

    last_dispatch_at = models.DateTimeField(null=True, blank=True)
    escalated_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']

    def __str__(self):
        return f"Order #{self.id} - {self.current_status}"

    @property
    def has_open_offer(self) -> bool:
        return self.offered_driver_id is not None

    @property
    def is_terminal(self) -> bool:
        return self.current_status in OrderStatus.TERMINAL

    def total_weight_g(self) -> int:
        total = self.packages.aggregate(total=Sum(F('weight_g') * F('quantity')))['total']
        return int(total or 0)


class Package(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='packages')
    description = models.CharField(max_length=255, blank=True)
    weight_g = models.PositiveIntegerField()
    quantity = models.PositiveIntegerField(default=1)

    class Meta:
        db_table = 'order_packages'

    def __str__(self):
        return f"{self.quantity} x {self.weight_g} g ({self.description or 'package'})"


class OrderStatusLog(models.Model):
    """Append-only order history; the newest row is the order's status."""

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='status_logs')
    status = models.CharField(max_length=20, choices=OrderStatus.CHOICES)
    changed_at = models.DateTimeField(default=timezone.now, db_index=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )
    latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = 'order_status_logs'
        ordering = ['-changed_at', '-id']

    def __str__(self):
        return f"Order {self.order_id} -> {self.status}"


class OfferAttempt(models.Model):
    """One row per offer made for an order (auto or manual). Doubles as the tried-driver list."""

    STATUS_PENDING = 'pending'
    STATUS_ACCEPTED = 'accepted'
    STATUS_REFUSED = 'refused'
    STATUS_EXPIRED = 'expired'
    STATUS_SUPERSEDED = 'superseded'
    STATUS_WITHDRAWN = 'withdrawn'

    SOURCE_AUTO = 'auto'
    SOURCE_MANUAL = 'manual'

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='offer_attempts')
    driver = models.ForeignKey('drivers.Driver', on_delete=models.CASCADE, related_name='offer_attempts')
    attempt_number = models.PositiveIntegerField()

    source = models.CharField(
        max_length=10,
        choices=[(SOURCE_AUTO, 'Automatic'), (SOURCE_MANUAL, 'Manual')],
        default=SOURCE_AUTO,
    )
    offered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )

    status = models.CharField(
        max_length=20,
        choices=[
            (STATUS_PENDING, 'Pending'),
            (STATUS_ACCEPTED, 'Accepted'),
            (STATUS_REFUSED, 'Refused'),
            (STATUS_EXPIRED, 'Expired'),
            (STATUS_SUPERSEDED, 'Superseded'),
            (STATUS_WITHDRAWN, 'Withdrawn'),
        ],
        default=STATUS_PENDING,
    )

    sent_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    responded_at = models.DateTimeField(null=True, blank=True)
    # Set once the worker has re-dispatched after this attempt closed
    followed_up_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'order_offer_attempts'
        ordering = ['sent_at', 'id']

    def __str__(self):
        return f"Offer #{self.id} - Order {self.order_id} -> Driver {self.driver_id} ({self.status})"


class ConsumerCheckpoint(models.Model):
    """Last event-log entry id processed by a named consumer."""

    consumer_name = models.CharField(max_length=100, unique=True)
    last_event_id = models.CharField(max_length=64)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'event_consumer_checkpoints'

    def __str__(self):
        return f"{self.consumer_name} @ {self.last_event_id}"
