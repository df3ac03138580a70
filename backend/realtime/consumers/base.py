"""
Shared WebSocket plumbing for the driver and client sockets.

A consumer declares the role it serves and the channel groups it listens on;
server-side pushes arrive through realtime.notifications as group_send events
whose "type" is the handler name.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)

# Close codes in the 4000 range are free for application use
CLOSE_UNAUTHENTICATED = 4401
CLOSE_WRONG_ROLE = 4403


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Subclasses set `role` and may override:
        - setup(): load per-connection state, return False to refuse the socket
        - groups_for_connection(): groups to join once setup succeeded
        - handle_message(msg_type, data): messages sent by the app
    """

    role: Optional[str] = None

    async def connect(self):
        self.user = self.scope.get("user")
        self.subscriptions: List[str] = []

        if self.user is None or self.user.is_anonymous:
            await self.close(code=CLOSE_UNAUTHENTICATED)
            return
        if self.role and getattr(self.user, "role", None) != self.role:
            logger.info("Refusing %s socket for user %s (role %s)", self.role, self.user.id, self.user.role)
            await self.close(code=CLOSE_WRONG_ROLE)
            return

        self.user_id = self.user.id
        if not await self.setup():
            await self.close(code=CLOSE_WRONG_ROLE)
            return

        for group in self.groups_for_connection():
            await self.channel_layer.group_add(group, self.channel_name)
            self.subscriptions.append(group)

        await self.accept()
        await self.send_json({"type": "connection_established", **self.connection_info()})

    async def setup(self) -> bool:
        return True

    def groups_for_connection(self) -> Iterable[str]:
        return [f"user_{self.user_id}"]

    def connection_info(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "role": self.role}

    async def disconnect(self, close_code):
        for group in getattr(self, "subscriptions", []):
            await self.channel_layer.group_discard(group, self.channel_name)
        logger.debug("Socket for user %s closed (%s)", getattr(self, "user_id", None), close_code)

    async def receive_json(self, content, **kwargs):
        msg_type = content.get("type") if isinstance(content, dict) else None
        if not msg_type:
            await self.send_error("Message type is required")
            return
        if msg_type == "ping":
            await self.send_json({"type": "pong"})
            return

        try:
            await self.handle_message(msg_type, content)
        except Exception:
            logger.exception("Socket message %s from user %s failed", msg_type, self.user_id)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        await self.send_error(f"Unknown message type: {msg_type}")

    async def send_error(self, message: str):
        await self.send_json({"type": "error", "message": message})

    async def relay(self, event: Dict[str, Any], *fields: str, **renamed: str):
        """
        Forward a group_send event to the socket, keeping only `fields`.
        `renamed` maps outgoing names to event keys (order="order_data").
        """
        payload = {"type": event["type"]}
        for name in fields:
            payload[name] = event.get(name)
        for name, key in renamed.items():
            payload[name] = event.get(key)
        await self.send_json(payload)
