from django.contrib import admin
from drivers.models import (
    AvailabilityException,
    AvailabilityRule,
    Driver,
    DriverStatusLog,
    DriverVehicle,
)


class DriverVehicleInline(admin.TabularInline):
    model = DriverVehicle
    extra = 0


class AvailabilityRuleInline(admin.TabularInline):
    model = AvailabilityRule
    extra = 0


@admin.register(Driver)
class DriverAdmin(admin.ModelAdmin):
    """Admin panel for couriers. Status columns are written by the dispatch engine only."""

    list_display = [
        "user",
        "latest_status",
        "assignments_in_progress_count",
        "rating",
        "current_latitude",
        "current_longitude",
        "last_location_update",
    ]

    list_filter = [
        "latest_status",
        "last_location_update",
    ]

    search_fields = [
        "user__username",
        "vehicles__plate_number",
    ]

    readonly_fields = [
        "latest_status",
        "assignments_in_progress_count",
        "latest_status_changed_at",
        "last_location_update",
    ]

    inlines = [DriverVehicleInline, AvailabilityRuleInline]

    ordering = ("user__username",)


@admin.register(DriverStatusLog)
class DriverStatusLogAdmin(admin.ModelAdmin):
    list_display = ["driver", "status", "assignments_in_progress_count", "changed_at"]
    list_filter = ["status"]
    search_fields = ["driver__user__username"]

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(AvailabilityException)
class AvailabilityExceptionAdmin(admin.ModelAdmin):
    list_display = ["driver", "exception_date", "is_unavailable_all_day", "reason"]
    list_filter = ["exception_date"]
