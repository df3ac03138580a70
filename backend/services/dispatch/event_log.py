"""
Redis Streams backed event log.

Entries are appended with XADD and never deleted by consumers (the stream is
only trimmed approximately by length). Consumers read with XREAD from their
own cursor, so the log can be replayed from any stored id.
"""

import logging
import time
from typing import List, Optional, Tuple

import redis
from django.conf import settings
from django.db import transaction

from .config import dispatch_setting
from .events import LifecycleEvent, encode_event

logger = logging.getLogger(__name__)

_event_log: Optional["EventLog"] = None


def get_redis_client() -> redis.Redis:
    """Redis client for the event stream."""
    return redis.Redis.from_url(
        getattr(settings, "REDIS_URL", "redis://localhost:6379/0"),
        decode_responses=True,
    )


class EventLog:
    def __init__(self, client=None, stream_key: Optional[str] = None):
        self.client = client if client is not None else get_redis_client()
        self.stream_key = stream_key or dispatch_setting("EVENT_STREAM_KEY")

    def publish(self, event: LifecycleEvent, retries: Optional[int] = None) -> Optional[str]:
        """
        Append an event. Retries with exponential backoff on connection errors.

        Returns the entry id, or None once retries are exhausted. Callers
        publish after commit, so a lost event is recovered by the
        reconciliation scan rather than by failing the caller.
        """
        if retries is None:
            retries = dispatch_setting("PUBLISH_RETRIES")
        backoff_ms = dispatch_setting("PUBLISH_BACKOFF_MS")
        fields = encode_event(event)

        attempt = 0
        while True:
            try:
                entry_id = self.client.xadd(
                    self.stream_key,
                    fields,
                    maxlen=dispatch_setting("EVENT_STREAM_MAXLEN"),
                    approximate=True,
                )
            except redis.RedisError as exc:
                attempt += 1
                if attempt > retries:
                    logger.error(
                        "Giving up publishing %s for order %s after %s attempt(s): %s",
                        event.event_type.value, event.order_id, attempt, exc,
                    )
                    return None
                logger.warning(
                    "Publishing %s for order %s failed (attempt %s/%s): %s",
                    event.event_type.value, event.order_id, attempt, retries, exc,
                )
                time.sleep(backoff_ms * (2 ** attempt) / 1000.0)
                continue

            logger.info(
                "Published %s order=%s driver=%s id=%s",
                event.event_type.value, event.order_id, event.driver_id, entry_id,
            )
            return entry_id

    def read(self, after_id: str, count: int, block_ms: int) -> List[Tuple[str, dict]]:
        """Entries strictly after after_id, oldest first. Blocks up to block_ms when empty."""
        response = self.client.xread(
            {self.stream_key: after_id},
            count=count,
            block=block_ms if block_ms and block_ms > 0 else None,
        )
        entries: List[Tuple[str, dict]] = []
        for _stream, messages in response or []:
            for entry_id, fields in messages:
                entries.append((entry_id, fields))
        return entries

    def latest_id(self) -> str:
        """Id of the newest entry, or "0-0" for an empty stream."""
        newest = self.client.xrevrange(self.stream_key, count=1)
        if not newest:
            return "0-0"
        return newest[0][0]


def get_event_log() -> EventLog:
    """Get singleton EventLog instance."""
    global _event_log
    if _event_log is None:
        _event_log = EventLog()
    return _event_log


def set_event_log(event_log: Optional[EventLog]) -> None:
    """Swap the process-wide event log (None resets to lazy default)."""
    global _event_log
    _event_log = event_log


def publish_event(event: LifecycleEvent) -> Optional[str]:
    return get_event_log().publish(event)


def publish_on_commit(event: LifecycleEvent) -> None:
    """Publish once the surrounding transaction commits; immediately if there is none."""
    transaction.on_commit(lambda: publish_event(event))
