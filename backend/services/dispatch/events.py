"""
Lifecycle events exchanged through the dispatch event log.

Each event kind is its own dataclass with a typed payload. On the wire an
entry is a flat string map:

    {"type": ..., "orderId": ..., "driverId": ..., "timestamp": <epoch ms>, "payload": <json>}

driverId and payload are omitted when empty.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Type

from django.utils import timezone


class EventDecodeError(Exception):
    """Raised when a log entry cannot be turned into a known event."""
    pass


class EventType(str, Enum):
    NEW_ORDER_READY = "new_order_ready"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REFUSED = "offer_refused"
    OFFER_EXPIRED = "offer_expired"
    MANUALLY_ASSIGNED = "manually_assigned"
    COMPLETED = "completed"
    CANCELLED_BY_ADMIN = "cancelled_by_admin"
    CANCELLED_BY_SYSTEM = "cancelled_by_system"
    FAILED = "failed"


TERMINAL_EVENT_TYPES = frozenset({
    EventType.COMPLETED,
    EventType.CANCELLED_BY_ADMIN,
    EventType.CANCELLED_BY_SYSTEM,
    EventType.FAILED,
})

REASON_NO_DRIVER_FOUND = "no_driver_found"


@dataclass(frozen=True, kw_only=True)
class LifecycleEvent:
    order_id: int
    driver_id: Optional[int] = None
    timestamp: datetime = field(default_factory=timezone.now)

    event_type: ClassVar[EventType]

    def payload(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def payload_kwargs(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True, kw_only=True)
class NewOrderReady(LifecycleEvent):
    """Carries the pickup point and weight so the first search needs no extra read."""
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    total_weight_g: Optional[int] = None

    event_type: ClassVar[EventType] = EventType.NEW_ORDER_READY

    def payload(self) -> Dict[str, Any]:
        if self.pickup_latitude is None or self.pickup_longitude is None:
            return {}
        return {
            "pickup": {"latitude": self.pickup_latitude, "longitude": self.pickup_longitude},
            "totalWeightG": self.total_weight_g,
        }

    @classmethod
    def payload_kwargs(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        pickup = payload.get("pickup") or {}
        return {
            "pickup_latitude": pickup.get("latitude"),
            "pickup_longitude": pickup.get("longitude"),
            "total_weight_g": payload.get("totalWeightG"),
        }


@dataclass(frozen=True, kw_only=True)
class OfferAccepted(LifecycleEvent):
    event_type: ClassVar[EventType] = EventType.OFFER_ACCEPTED


@dataclass(frozen=True, kw_only=True)
class OfferRefused(LifecycleEvent):
    reason: Optional[str] = None

    event_type: ClassVar[EventType] = EventType.OFFER_REFUSED

    def payload(self) -> Dict[str, Any]:
        return {"reason": self.reason} if self.reason else {}

    @classmethod
    def payload_kwargs(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {"reason": payload.get("reason")}


@dataclass(frozen=True, kw_only=True)
class OfferExpired(LifecycleEvent):
    event_type: ClassVar[EventType] = EventType.OFFER_EXPIRED


@dataclass(frozen=True, kw_only=True)
class ManuallyAssigned(LifecycleEvent):
    actor_id: Optional[int] = None

    event_type: ClassVar[EventType] = EventType.MANUALLY_ASSIGNED

    def payload(self) -> Dict[str, Any]:
        return {"actorId": self.actor_id} if self.actor_id is not None else {}

    @classmethod
    def payload_kwargs(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {"actor_id": payload.get("actorId")}


@dataclass(frozen=True, kw_only=True)
class Completed(LifecycleEvent):
    event_type: ClassVar[EventType] = EventType.COMPLETED


@dataclass(frozen=True, kw_only=True)
class CancelledByAdmin(LifecycleEvent):
    actor_id: Optional[int] = None
    reason: Optional[str] = None

    event_type: ClassVar[EventType] = EventType.CANCELLED_BY_ADMIN

    def payload(self) -> Dict[str, Any]:
        data = {}
        if self.actor_id is not None:
            data["actorId"] = self.actor_id
        if self.reason:
            data["reason"] = self.reason
        return data

    @classmethod
    def payload_kwargs(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {"actor_id": payload.get("actorId"), "reason": payload.get("reason")}


@dataclass(frozen=True, kw_only=True)
class CancelledBySystem(LifecycleEvent):
    reason: str = REASON_NO_DRIVER_FOUND

    event_type: ClassVar[EventType] = EventType.CANCELLED_BY_SYSTEM

    def payload(self) -> Dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def payload_kwargs(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {"reason": payload.get("reason") or REASON_NO_DRIVER_FOUND}


@dataclass(frozen=True, kw_only=True)
class Failed(LifecycleEvent):
    reason: Optional[str] = None

    event_type: ClassVar[EventType] = EventType.FAILED

    def payload(self) -> Dict[str, Any]:
        return {"reason": self.reason} if self.reason else {}

    @classmethod
    def payload_kwargs(cls, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {"reason": payload.get("reason")}


EVENT_CLASSES: Dict[EventType, Type[LifecycleEvent]] = {
    cls.event_type: cls
    for cls in (
        NewOrderReady,
        OfferAccepted,
        OfferRefused,
        OfferExpired,
        ManuallyAssigned,
        Completed,
        CancelledByAdmin,
        CancelledBySystem,
        Failed,
    )
}


# ---------------------- Wire codec ----------------------

def _to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=dt_timezone.utc)


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def encode_event(event: LifecycleEvent) -> Dict[str, str]:
    """Flatten an event into stream entry fields."""
    fields = {
        "type": event.event_type.value,
        "orderId": str(event.order_id),
        "timestamp": str(_to_epoch_ms(event.timestamp)),
    }
    if event.driver_id is not None:
        fields["driverId"] = str(event.driver_id)
    payload = event.payload()
    if payload:
        fields["payload"] = json.dumps(payload, separators=(",", ":"))
    return fields


def decode_event(raw_fields: Mapping) -> LifecycleEvent:
    """Rebuild an event from stream entry fields (str or bytes keys/values)."""
    fields = {_text(k): _text(v) for k, v in raw_fields.items()}

    try:
        event_type = EventType(fields["type"])
    except KeyError:
        raise EventDecodeError("Event entry has no type")
    except ValueError:
        raise EventDecodeError(f"Unknown event type: {fields['type']}")

    try:
        order_id = int(fields["orderId"])
    except (KeyError, ValueError):
        raise EventDecodeError(f"{event_type.value}: missing or invalid orderId")

    driver_id = None
    if fields.get("driverId"):
        try:
            driver_id = int(fields["driverId"])
        except ValueError:
            raise EventDecodeError(f"{event_type.value}: invalid driverId {fields['driverId']!r}")

    if fields.get("timestamp"):
        try:
            timestamp = _from_epoch_ms(fields["timestamp"])
        except ValueError:
            raise EventDecodeError(f"{event_type.value}: invalid timestamp {fields['timestamp']!r}")
    else:
        timestamp = timezone.now()

    payload: Dict[str, Any] = {}
    if fields.get("payload"):
        try:
            payload = json.loads(fields["payload"])
        except json.JSONDecodeError:
            raise EventDecodeError(f"{event_type.value}: payload is not valid JSON")
        if not isinstance(payload, dict):
            raise EventDecodeError(f"{event_type.value}: payload must be an object")

    cls = EVENT_CLASSES[event_type]
    return cls(order_id=order_id, driver_id=driver_id, timestamp=timestamp, **cls.payload_kwargs(payload))
