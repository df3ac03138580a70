from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from accounts.models import User
from drivers.models import Driver
from drivers.serializers import (
    AvailabilityExceptionSerializer,
    AvailabilityRuleSerializer,
    DriverProfileSerializer,
    DriverStatusLogSerializer,
    DriverStatusSerializer,
    LocationUpdateSerializer,
)
from orders.models import Order, OrderStatus
from orders.serializers import OrderSerializer

from drivers import services


# Utility: Ensure request.user is a driver
def require_driver(user):
    if user.role != User.ROLE_DRIVER:
        return False, Response({"error": "Only drivers allowed"}, status=403)
    try:
        driver = user.driver
        return True, driver
    except Driver.DoesNotExist:
        return False, Response({"error": "Driver profile not found"}, status=404)


class DriverProfileView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver  # Response object

        serializer = DriverProfileSerializer(driver, context={"request": request})
        return Response(serializer.data)


class DriverStatusView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        history = driver.status_logs.all()[:20]
        return Response({
            "status": driver.latest_status,
            "assignments_in_progress_count": driver.assignments_in_progress_count,
            "changed_at": driver.latest_status_changed_at,
            "history": DriverStatusLogSerializer(history, many=True).data,
        })

    def put(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        serializer = DriverStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        new_status = serializer.validated_data["status"]

        try:
            driver = services.set_driver_availability(driver, new_status)
        except services.DriverBusyError as e:
            driver.refresh_from_db(fields=["latest_status"])
            return Response({"error": str(e), "status": driver.latest_status}, status=409)
        except services.InvalidDriverStatusError as e:
            return Response({"error": str(e)}, status=400)

        return Response({
            "message": f"Status updated to {driver.latest_status}",
            "status": driver.latest_status,
        })


#    Drivers on the websocket send driver_location_update instead; this is the HTTP fallback.
class DriverLocationUpdateView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        return Response({
            "latitude": float(driver.current_latitude) if driver.current_latitude is not None else None,
            "longitude": float(driver.current_longitude) if driver.current_longitude is not None else None,
            "last_updated": driver.last_location_update,
            "status": driver.latest_status,
        })

    def post(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        lat = serializer.validated_data["latitude"]
        lon = serializer.validated_data["longitude"]

        services.update_driver_location(driver, lat, lon)

        return Response({
            "message": "Location updated",
            "latitude": float(lat),
            "longitude": float(lon),
            "status": driver.latest_status,
        })


class DriverCurrentOfferView(APIView):
    """Polling fallback for the mission_offer websocket message."""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        order = Order.objects.filter(offered_driver=driver).first()
        if not order:
            return Response({"has_offer": False, "message": "No open offer"})

        return Response({
            "has_offer": True,
            "expires_at": order.offer_expires_at,
            "order": OrderSerializer(order, context={"request": request}).data,
        })


class DriverCurrentMissionsView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        missions = (
            Order.objects.filter(assigned_driver=driver, current_status__in=OrderStatus.IN_PROGRESS)
            .order_by("created_at")
        )
        serializer = OrderSerializer(missions, many=True, context={"request": request})
        return Response({"count": len(serializer.data), "missions": serializer.data})


class DriverMissionHistoryView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        finished = (
            Order.objects.filter(assigned_driver=driver, current_status__in=OrderStatus.TERMINAL)
            .order_by("-updated_at")
        )
        serializer = OrderSerializer(finished, many=True, context={"request": request})
        return Response({"count": finished.count(), "missions": serializer.data})


class DriverScheduleView(APIView):
    """
    GET: weekly rules and upcoming exceptions.
    POST: add a weekly rule.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        return Response({
            "rules": AvailabilityRuleSerializer(driver.availability_rules.all(), many=True).data,
            "exceptions": AvailabilityExceptionSerializer(
                driver.availability_exceptions.order_by("exception_date"), many=True
            ).data,
        })

    def post(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        serializer = AvailabilityRuleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        serializer.save(driver=driver)
        return Response(serializer.data, status=201)
