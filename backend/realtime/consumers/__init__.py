"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .client_consumer import ClientConsumer
from .driver_consumer import DriverConsumer

__all__ = [
    "BaseConsumer",
    "ClientConsumer",
    "DriverConsumer",
]
