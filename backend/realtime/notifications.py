"""
Notification helpers for sending WebSocket messages to connected clients.

Drivers listen on driver_<user_id>, clients on user_<user_id>. The event_type
is the handler name on the consumer side (see consumers/base.py).
"""

from __future__ import annotations

import logging
from typing import Dict, Any

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)


def _group_send(group: str, payload: Dict[str, Any]) -> bool:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer available, dropping %s for %s", payload.get("type"), group)
        return False

    logger.debug("WS -> %s: %s", group, payload)
    async_to_sync(channel_layer.group_send)(group, payload)
    return True


def notify_driver_event(
    event_type: str,
    order,
    driver,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send an order event to a driver through driver_<user_id>.

    Args:
        event_type: Handler name in consumer (mission_offer, offer_withdrawn, mission_assigned, mission_cancelled)
        order: Order model instance
        driver: Driver model instance
        message: Optional message to include
        extra: Additional payload data

    Returns:
        True if sent, False otherwise
    """
    if driver is None:
        return False

    from orders.serializers import OrderSerializer

    payload = {
        "type": event_type,
        "order_id": order.id,
        "driver_id": driver.id,
        "order_data": OrderSerializer(order).data,
        **(extra or {}),
    }
    if message:
        payload["message"] = message

    return _group_send(f"driver_{driver.user_id}", payload)


def notify_client_event(
    event_type: str,
    order,
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """Send an order event to the client who placed it, through user_<client_id>."""
    if not order.client_id:
        return False

    payload = {
        "type": event_type,
        "order_id": order.id,
        "status": order.current_status,
        **(extra or {}),
    }
    if message:
        payload["message"] = message

    return _group_send(f"user_{order.client_id}", payload)
