"""Client WebSocket consumer for order status notifications."""

from accounts.models import User

from .base import BaseConsumer


class ClientConsumer(BaseConsumer):
    """Read-only socket: clients follow their orders through user_<id>."""

    role = User.ROLE_CLIENT

    async def order_accepted(self, event):
        await self.relay(event, "order_id", "status", "message")

    async def order_status_changed(self, event):
        await self.relay(event, "order_id", "status", "driver_id")

    async def order_cancelled(self, event):
        await self.relay(event, "order_id", "status", "message")

    async def order_escalated(self, event):
        """No driver was found automatically; a dispatcher takes over."""
        await self.relay(event, "order_id", "status", "message")
