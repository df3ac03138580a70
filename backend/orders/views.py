from django.db.models import Q
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from drivers.views import require_driver
from services.order_management import (
    InvalidMissionTransitionError,
    OrderNotFoundError,
    accept,
    advance_mission,
    cancel_order_by_admin,
    create_order,
    manually_assign,
    refuse,
)
from services.order_management import offer_protocol
from .models import Order, OrderStatus
from .permissions import IsClient, IsDispatcher, IsDriver
from .serializers import (
    AdminCancelSerializer,
    ManualAssignSerializer,
    MissionStatusSerializer,
    OfferAttemptSerializer,
    OrderCreateSerializer,
    OrderSerializer,
    OrderStatusLogSerializer,
    RefuseSerializer,
)

# HTTP status for rejected offer operations; anything else is a 409 conflict.
REJECTION_STATUS = {
    offer_protocol.ORDER_NOT_FOUND: 404,
    offer_protocol.DRIVER_NOT_FOUND: 404,
    offer_protocol.OFFER_EXPIRED: 410,
    offer_protocol.NO_CAPABLE_VEHICLE: 400,
}


def rejected_response(result):
    return Response(
        {"error": result.message, "code": result.error_code},
        status=REJECTION_STATUS.get(result.error_code, 409),
    )


# ===================== Client =====================

class ClientOrdersView(APIView):
    """
    GET: the client's orders, newest first.
    POST: place a new order.
    """
    permission_classes = [IsAuthenticated, IsClient]

    def get(self, request):
        orders = Order.objects.filter(client=request.user).order_by("-created_at")[:50]
        serializer = OrderSerializer(orders, many=True, context={"request": request})
        return Response({"count": len(serializer.data), "orders": serializer.data})

    def post(self, request):
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = create_order(client=request.user, **serializer.validated_data)

        return Response(
            {
                "message": result.message,
                "order": OrderSerializer(result.order, context={"request": request}).data,
            },
            status=201,
        )


class OrderDetailView(APIView):
    """Order with its status history, for the client, the drivers involved and dispatchers."""
    permission_classes = [IsAuthenticated]

    def get(self, request, order_id: int):
        user = request.user
        orders = Order.objects.all()
        if not (user.is_staff or user.role == user.ROLE_ADMIN):
            orders = orders.filter(
                Q(client=user) | Q(assigned_driver__user=user) | Q(offered_driver__user=user)
            )

        order = orders.filter(id=order_id).first()
        if not order:
            return Response({"error": "Order not found"}, status=404)

        return Response({
            "order": OrderSerializer(order, context={"request": request}).data,
            "history": OrderStatusLogSerializer(order.status_logs.all(), many=True).data,
        })


# ===================== Driver =====================

class MissionAcceptView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request, order_id: int):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        result = accept(order_id, driver.id)
        if not result.success:
            return rejected_response(result)

        return Response({
            "message": result.message,
            "order": OrderSerializer(result.order, context={"request": request}).data,
        })


class MissionRefuseView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request, order_id: int):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        serializer = RefuseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = refuse(order_id, driver.id, reason=serializer.validated_data.get("reason") or None)
        if not result.success:
            # Offer already gone: nothing left to refuse.
            return Response({"message": result.message, "code": result.error_code})

        return Response({"message": result.message})


class MissionStatusView(APIView):
    permission_classes = [IsAuthenticated, IsDriver]

    def post(self, request, order_id: int):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        serializer = MissionStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = advance_mission(
                order_id,
                driver,
                data["status"],
                latitude=data.get("latitude"),
                longitude=data.get("longitude"),
                reason=data.get("reason") or None,
            )
        except OrderNotFoundError as e:
            return Response({"error": str(e)}, status=404)
        except InvalidMissionTransitionError as e:
            return Response({"error": str(e)}, status=409)

        return Response({
            "message": result.message,
            "order": OrderSerializer(result.order, context={"request": request}).data,
        })


# ===================== Dispatcher =====================

class AdminAssignView(APIView):
    permission_classes = [IsAuthenticated, IsDispatcher]

    def post(self, request, order_id: int):
        serializer = ManualAssignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = manually_assign(order_id, serializer.validated_data["driver_id"], actor=request.user)
        if not result.success:
            return rejected_response(result)

        return Response({
            "message": result.message,
            "expires_at": result.extra["expires_at"],
            "order": OrderSerializer(result.order, context={"request": request}).data,
        })


class AdminCancelView(APIView):
    permission_classes = [IsAuthenticated, IsDispatcher]

    def post(self, request, order_id: int):
        serializer = AdminCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = cancel_order_by_admin(order_id, request.user, serializer.validated_data["reason"])
        except OrderNotFoundError as e:
            return Response({"error": str(e)}, status=404)
        except InvalidMissionTransitionError as e:
            return Response({"error": str(e)}, status=409)

        return Response({
            "message": result.message,
            "order": OrderSerializer(result.order, context={"request": request}).data,
        })


class EscalatedOrdersView(APIView):
    """Orders automatic dispatch gave up on, oldest first."""
    permission_classes = [IsAuthenticated, IsDispatcher]

    def get(self, request):
        orders = (
            Order.objects.filter(
                escalated_at__isnull=False,
                assigned_driver__isnull=True,
                current_status=OrderStatus.PENDING,
            )
            .order_by("escalated_at")
        )
        serializer = OrderSerializer(orders, many=True, context={"request": request})
        return Response({"count": len(serializer.data), "orders": serializer.data})


class OrderAttemptsView(APIView):
    permission_classes = [IsAuthenticated, IsDispatcher]

    def get(self, request, order_id: int):
        order = Order.objects.filter(id=order_id).first()
        if not order:
            return Response({"error": "Order not found"}, status=404)

        attempts = order.offer_attempts.select_related("driver").all()
        return Response({
            "order_id": order.id,
            "assignment_attempt_count": order.assignment_attempt_count,
            "attempts": OfferAttemptSerializer(attempts, many=True).data,
        })
