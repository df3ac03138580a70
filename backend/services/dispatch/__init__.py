"""
Dispatch engine: event log, worker and reconciliation.

Modules:
    - events: typed lifecycle events and their wire codec
    - event_log: Redis Streams append/read
    - assignment: one dispatch attempt for an order
    - escalation: hand-off of orders nobody accepted
    - reconciliation: expired-offer and stalled-order scans
    - worker: the long-running consumer loop
"""

from .events import (
    EventType,
    LifecycleEvent,
    NewOrderReady,
    OfferAccepted,
    OfferRefused,
    OfferExpired,
    ManuallyAssigned,
    Completed,
    CancelledByAdmin,
    CancelledBySystem,
    Failed,
    EventDecodeError,
    encode_event,
    decode_event,
)
from .event_log import EventLog, get_event_log, publish_event, publish_on_commit

__all__ = [
    "EventType",
    "LifecycleEvent",
    "NewOrderReady",
    "OfferAccepted",
    "OfferRefused",
    "OfferExpired",
    "ManuallyAssigned",
    "Completed",
    "CancelledByAdmin",
    "CancelledBySystem",
    "Failed",
    "EventDecodeError",
    "encode_event",
    "decode_event",
    "EventLog",
    "get_event_log",
    "publish_event",
    "publish_on_commit",
]
