from rest_framework import serializers

from drivers.serializers import DriverBasicSerializer
from .models import Order, OrderStatus, OrderStatusLog, OfferAttempt, Package


class PackageSerializer(serializers.ModelSerializer):
    class Meta:
        model = Package
        fields = ['id', 'description', 'weight_g', 'quantity']
        read_only_fields = ['id']


class OrderSerializer(serializers.ModelSerializer):
    """Order as seen by clients, drivers and dispatchers"""
    packages = PackageSerializer(many=True, read_only=True)
    assigned_driver = DriverBasicSerializer(read_only=True)
    total_weight_g = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'client', 'current_status',
            'pickup_latitude', 'pickup_longitude', 'pickup_address',
            'delivery_latitude', 'delivery_longitude', 'delivery_address',
            'packages', 'total_weight_g',
            'offered_driver', 'offer_expires_at', 'assignment_attempt_count',
            'assigned_driver', 'escalated_at', 'cancellation_reason',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_total_weight_g(self, obj):
        return obj.total_weight_g()


class OrderCreateSerializer(serializers.Serializer):
    pickup_latitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-90, max_value=90)
    pickup_longitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-180, max_value=180)
    pickup_address = serializers.CharField(required=False, allow_blank=True, default='')
    delivery_latitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-90, max_value=90)
    delivery_longitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-180, max_value=180)
    delivery_address = serializers.CharField(required=False, allow_blank=True, default='')
    packages = PackageSerializer(many=True)

    def validate_packages(self, value):
        if not value:
            raise serializers.ValidationError("At least one package is required")
        for package in value:
            if package['weight_g'] <= 0 or package.get('quantity', 1) <= 0:
                raise serializers.ValidationError("Package weight and quantity must be positive")
        return value


class MissionStatusSerializer(serializers.Serializer):
    """Driver-reported mission progress."""
    status = serializers.ChoiceField(choices=[
        OrderStatus.AT_PICKUP,
        OrderStatus.EN_ROUTE,
        OrderStatus.AT_DELIVERY,
        OrderStatus.SUCCESS,
        OrderStatus.FAILED,
    ])
    latitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False)
    longitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False)
    reason = serializers.CharField(required=False, allow_blank=True)


class RefuseSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True)


class ManualAssignSerializer(serializers.Serializer):
    driver_id = serializers.IntegerField()


class AdminCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class OrderStatusLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusLog
        fields = ['status', 'changed_at', 'actor', 'latitude', 'longitude', 'metadata']


class OfferAttemptSerializer(serializers.ModelSerializer):
    class Meta:
        model = OfferAttempt
        fields = [
            'id', 'driver', 'attempt_number', 'source', 'status',
            'sent_at', 'expires_at', 'responded_at',
        ]
