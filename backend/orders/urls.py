from django.urls import path
from .views import (
    ClientOrdersView,
    OrderDetailView,
    MissionAcceptView,
    MissionRefuseView,
    MissionStatusView,
    AdminAssignView,
    AdminCancelView,
    EscalatedOrdersView,
    OrderAttemptsView,
)

# Client and shared order endpoints (at /api/orders/)
order_urlpatterns = [
    path("", ClientOrdersView.as_view(), name="client-orders"),
    path("<int:order_id>/", OrderDetailView.as_view(), name="order-detail"),
]

# Driver responses to offers and mission progress (at /api/missions/)
mission_urlpatterns = [
    path("<int:order_id>/accept/", MissionAcceptView.as_view(), name="mission-accept"),
    path("<int:order_id>/refuse/", MissionRefuseView.as_view(), name="mission-refuse"),
    path("<int:order_id>/status/", MissionStatusView.as_view(), name="mission-status"),
]

# Dispatcher endpoints (at /api/admin/orders/)
admin_urlpatterns = [
    path("escalated/", EscalatedOrdersView.as_view(), name="admin-escalated-orders"),
    path("<int:order_id>/assign/", AdminAssignView.as_view(), name="admin-order-assign"),
    path("<int:order_id>/cancel/", AdminCancelView.as_view(), name="admin-order-cancel"),
    path("<int:order_id>/attempts/", OrderAttemptsView.as_view(), name="admin-order-attempts"),
]
