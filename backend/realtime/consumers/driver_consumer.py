"""Driver WebSocket consumer: location updates, offer responses and mission notifications."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, Optional

from channels.db import database_sync_to_async

from accounts.models import User
from .base import BaseConsumer

logger = logging.getLogger(__name__)


class DriverConsumer(BaseConsumer):
    """
    Socket for couriers. Listens on driver_<user_id> for offers, withdrawals,
    assignments and cancellations; accepts location updates and offer
    responses from the app.
    """

    role = User.ROLE_DRIVER

    async def setup(self) -> bool:
        self.driver_id = await self._get_driver_id()
        if self.driver_id is None:
            logger.warning("Driver socket refused: user %s has no driver profile", self.user_id)
            return False
        return True

    def groups_for_connection(self):
        return [f"driver_{self.user_id}"]

    def connection_info(self):
        return {**super().connection_info(), "driver_id": self.driver_id}

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        if msg_type == "driver_location_update":
            await self._handle_location_update(data)
        elif msg_type in ("offer_accept", "offer_refuse"):
            await self._handle_offer_response(data, accepted=msg_type == "offer_accept")
        else:
            await super().handle_message(msg_type, data)

    async def _handle_location_update(self, data: Dict[str, Any]):
        try:
            lat = Decimal(str(data["latitude"]))
            lon = Decimal(str(data["longitude"]))
        except (KeyError, InvalidOperation):
            await self.send_error("driver_location_update requires latitude and longitude")
            return

        if not (-90 <= lat <= 90 and -180 <= lon <= 180):
            await self.send_error("Coordinates out of range")
            return

        await self._save_location(lat, lon)
        await self.send_json({"type": "location_updated", "latitude": float(lat), "longitude": float(lon)})

    async def _handle_offer_response(self, data: Dict[str, Any], accepted: bool):
        order_id = data.get("order_id")
        if not isinstance(order_id, int):
            await self.send_error("order_id is required")
            return

        result = await self._respond_to_offer(order_id, accepted, data.get("reason"))
        await self.send_json({
            "type": "offer_response",
            "order_id": order_id,
            "accepted": accepted,
            "success": result.success,
            "code": result.error_code,
            "message": result.message,
        })

    # group_send handlers

    async def mission_offer(self, event):
        await self.relay(event, "order_id", "expires_at", order="order_data")

    async def offer_withdrawn(self, event):
        """Offer expired, went to someone else, or the order was closed."""
        await self.relay(event, "order_id", "reason")

    async def mission_assigned(self, event):
        await self.relay(event, "order_id", order="order_data")

    async def mission_cancelled(self, event):
        await self.relay(event, "order_id", "message")

    @database_sync_to_async
    def _get_driver_id(self) -> Optional[int]:
        from drivers.models import Driver

        return Driver.objects.filter(user_id=self.user_id).values_list("id", flat=True).first()

    @database_sync_to_async
    def _save_location(self, lat: Decimal, lon: Decimal):
        from drivers.models import Driver
        from drivers.services import update_driver_location

        update_driver_location(Driver.objects.get(id=self.driver_id), lat, lon)

    @database_sync_to_async
    def _respond_to_offer(self, order_id: int, accepted: bool, reason: Optional[str]):
        from services.order_management import accept, refuse

        if accepted:
            return accept(order_id, self.driver_id)
        return refuse(order_id, self.driver_id, reason=reason or None)
