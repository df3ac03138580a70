from django.contrib.auth import authenticate
from rest_framework import serializers

from .models import User


class UserSerializer(serializers.ModelSerializer):
    """Account as returned by login and /me; drivers also get their driver id and status."""
    driver_id = serializers.SerializerMethodField()
    driver_status = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ["id", "username", "email", "role", "phone_number", "driver_id", "driver_status"]
        read_only_fields = fields

    def _driver(self, obj):
        if obj.role != User.ROLE_DRIVER:
            return None
        return getattr(obj, "driver", None)

    def get_driver_id(self, obj):
        driver = self._driver(obj)
        return driver.id if driver else None

    def get_driver_status(self, obj):
        driver = self._driver(obj)
        return driver.latest_status if driver else None


class LoginSerializer(serializers.Serializer):
    username = serializers.CharField()
    password = serializers.CharField(write_only=True, trim_whitespace=False)

    def validate(self, attrs):
        user = authenticate(
            request=self.context.get("request"),
            username=attrs["username"],
            password=attrs["password"],
        )
        if user is None:
            raise serializers.ValidationError("Invalid username or password")
        attrs["user"] = user
        return attrs


class DeviceSerializer(serializers.ModelSerializer):
    """Contact details the apps keep up to date (phone number, push token)."""

    class Meta:
        model = User
        fields = ["phone_number", "push_token"]
        extra_kwargs = {"push_token": {"allow_null": True}}
