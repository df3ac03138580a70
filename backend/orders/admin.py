"""Tells what to show in the Django admin interface for orders"""

from django.contrib import admin
from .models import ConsumerCheckpoint, OfferAttempt, Order, OrderStatusLog, Package


class EscalatedFilter(admin.SimpleListFilter):
    title = "escalation"
    parameter_name = "escalated"

    def lookups(self, request, model_admin):
        return [("yes", "Needs manual assignment"), ("no", "Automatic")]

    def queryset(self, request, queryset):
        if self.value() == "yes":
            return queryset.filter(escalated_at__isnull=False, assigned_driver__isnull=True)
        if self.value() == "no":
            return queryset.filter(escalated_at__isnull=True)
        return queryset


class PackageInline(admin.TabularInline):
    model = Package
    extra = 0


class OfferAttemptInline(admin.TabularInline):
    model = OfferAttempt
    extra = 0
    fields = ("attempt_number", "driver", "source", "status", "sent_at", "expires_at", "responded_at")
    readonly_fields = fields
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    """Order admin. Offer and status columns are read-only; use the dispatcher API to change them."""
    list_display = [
        'id', 'client', 'current_status', 'offered_driver', 'offer_expires_at',
        'assignment_attempt_count', 'assigned_driver', 'escalated_at', 'created_at',
    ]
    list_filter = ['current_status', EscalatedFilter, 'created_at']
    search_fields = ['client__username', 'pickup_address', 'delivery_address']
    readonly_fields = [
        'current_status', 'offered_driver', 'offer_expires_at', 'assignment_attempt_count',
        'assigned_driver', 'last_dispatch_at', 'escalated_at', 'created_at', 'updated_at',
    ]
    inlines = [PackageInline, OfferAttemptInline]
    date_hierarchy = 'created_at'


@admin.register(OrderStatusLog)
class OrderStatusLogAdmin(admin.ModelAdmin):
    list_display = ("order", "status", "actor", "changed_at")
    list_filter = ("status",)
    search_fields = ("order__id",)

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(ConsumerCheckpoint)
class ConsumerCheckpointAdmin(admin.ModelAdmin):
    list_display = ("consumer_name", "last_event_id", "updated_at")
