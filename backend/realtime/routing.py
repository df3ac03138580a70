"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.client_consumer import ClientConsumer
from .consumers.driver_consumer import DriverConsumer

websocket_urlpatterns = [
    # Driver endpoint: offers, withdrawals, assignments, location updates
    # URL: ws://localhost:8000/ws/driver/?token=<access>
    re_path(
        r"ws/driver/$",
        DriverConsumer.as_asgi(),
        name="driver-ws"
    ),

    # Client endpoint: order status notifications
    # URL: ws://localhost:8000/ws/client/?token=<access>
    re_path(
        r"ws/client/$",
        ClientConsumer.as_asgi(),
        name="client-ws"
    ),
]
