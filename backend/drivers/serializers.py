from rest_framework import serializers
from drivers.models import (
    AvailabilityException,
    AvailabilityRule,
    Driver,
    DriverStatus,
    DriverStatusLog,
    DriverVehicle,
)
from accounts.serializers import UserSerializer


class DriverVehicleSerializer(serializers.ModelSerializer):
    class Meta:
        model = DriverVehicle
        fields = ["id", "plate_number", "max_payload_g", "is_active"]
        read_only_fields = ["id"]


class DriverProfileSerializer(serializers.ModelSerializer):
    """
    Full driver profile serializer
    """
    user = UserSerializer(read_only=True)
    vehicles = DriverVehicleSerializer(many=True, read_only=True)

    class Meta:
        model = Driver
        fields = [
            "id",
            "user",
            "rating",
            "latest_status",
            "assignments_in_progress_count",
            "current_latitude",
            "current_longitude",
            "last_location_update",
            "vehicles",
        ]
        read_only_fields = fields


class DriverBasicSerializer(serializers.ModelSerializer):
    """
    Lite version of driver info for order details
    (sent to clients once a driver accepted).
    """
    username = serializers.CharField(source="user.username", read_only=True)
    phone_number = serializers.CharField(source="user.phone_number", read_only=True)

    class Meta:
        model = Driver
        fields = [
            "id",
            "username",
            "phone_number",
            "rating",
            "current_latitude",
            "current_longitude",
        ]


class DriverStatusSerializer(serializers.Serializer):
    """
    Serializer for driver-initiated availability changes.
    """
    status = serializers.ChoiceField(choices=list(DriverStatus.SELF_SERVICE))


class LocationUpdateSerializer(serializers.Serializer):
    """
    Serializer for updating driver GPS location.
    """
    latitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-90, max_value=90)
    longitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-180, max_value=180)


class DriverStatusLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = DriverStatusLog
        fields = ["status", "assignments_in_progress_count", "metadata", "changed_at"]


class AvailabilityRuleSerializer(serializers.ModelSerializer):
    class Meta:
        model = AvailabilityRule
        fields = ["id", "day_of_week", "start_time", "end_time", "is_active"]
        read_only_fields = ["id"]

    def validate(self, data):
        if data["start_time"] >= data["end_time"]:
            raise serializers.ValidationError("start_time must be before end_time")
        return data


class AvailabilityExceptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = AvailabilityException
        fields = [
            "id",
            "exception_date",
            "is_unavailable_all_day",
            "unavailable_start_time",
            "unavailable_end_time",
            "reason",
        ]
        read_only_fields = ["id"]
