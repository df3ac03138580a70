"""
The dispatch worker: consumes lifecycle events and keeps orders moving.

Two activities run side by side and only meet in the database:

    * the consumer loop, reading the event log from a persisted checkpoint
      and routing each event to a handler keyed by its type;
    * the ExpirationScanner thread, running scan_expired_offers on a fixed
      interval as the backstop for lost or unprocessed events.

When LEADER_LOCK_ENABLED is set, only the instance holding the Redis lease
consumes events or scans; other instances wait and retry the lease.
"""

import logging
import threading
from typing import Callable, Dict, Optional

import redis
from django.db import close_old_connections
from django.utils import timezone
from redis.exceptions import LockError

from orders.models import ConsumerCheckpoint, OfferAttempt, Order
from services.order_management.offer_protocol import claim_follow_up, expire, refuse, withdraw_offer
from .assignment import dispatch_order
from .config import dispatch_setting
from .event_log import EventLog, get_event_log
from .events import (
    EventDecodeError,
    EventType,
    LifecycleEvent,
    TERMINAL_EVENT_TYPES,
    decode_event,
)
from .reconciliation import scan_expired_offers

logger = logging.getLogger(__name__)


class ExpirationScanner:
    """Background thread that runs the offer reconciliation scan on an interval."""

    def __init__(self, interval_seconds: float, is_leader: Callable[[], bool]):
        self.interval_seconds = interval_seconds
        self.is_leader = is_leader
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="expiration-scanner", daemon=True)

    def start(self):
        if not self._thread.is_alive():
            logger.info("Starting expiration scanner (interval=%ss)", self.interval_seconds)
            self._thread.start()

    def stop(self):
        self._stop_event.set()

    def join(self, timeout=None):
        if self._thread.is_alive():
            self._thread.join(timeout)

    def _run(self):
        while not self._stop_event.wait(self.interval_seconds):
            if not self.is_leader():
                continue
            try:
                scan_expired_offers()
            except Exception:
                logger.exception("Expiration scan failed")
            finally:
                close_old_connections()


class DispatchWorker:
    def __init__(self, event_log: Optional[EventLog] = None, consumer_name: Optional[str] = None):
        self.event_log = event_log or get_event_log()
        self.consumer_name = consumer_name or dispatch_setting("CONSUMER_NAME")
        self.last_id: Optional[str] = None
        self.is_leader = False
        self.scanner: Optional[ExpirationScanner] = None
        self._lock = None
        self._stop_event = threading.Event()

        self.handlers: Dict[EventType, Callable[[LifecycleEvent], None]] = {
            EventType.NEW_ORDER_READY: self.handle_new_order_ready,
            EventType.OFFER_REFUSED: self.handle_offer_refused,
            EventType.OFFER_EXPIRED: self.handle_offer_expired,
            EventType.OFFER_ACCEPTED: self.handle_offer_accepted,
            EventType.MANUALLY_ASSIGNED: self.handle_manually_assigned,
        }
        for event_type in TERMINAL_EVENT_TYPES:
            self.handlers[event_type] = self.handle_terminal

    # ---------------------- Checkpoint ----------------------

    def resolve_start_id(self) -> str:
        """
        Where to resume reading: the stored checkpoint, or the current end of
        the log on first start (older entries are covered by the scan).
        """
        checkpoint = ConsumerCheckpoint.objects.filter(consumer_name=self.consumer_name).first()
        if checkpoint is not None:
            logger.info("Resuming %s after %s", self.consumer_name, checkpoint.last_event_id)
            return checkpoint.last_event_id

        latest = self.event_log.latest_id()
        self.save_checkpoint(latest)
        logger.info("No checkpoint for %s, starting after %s", self.consumer_name, latest)
        return latest

    def save_checkpoint(self, entry_id: str) -> None:
        ConsumerCheckpoint.objects.update_or_create(
            consumer_name=self.consumer_name,
            defaults={"last_event_id": entry_id},
        )

    # ---------------------- Consumption ----------------------

    def poll_once(self) -> int:
        """Read one batch and process it. Returns the number of entries handled."""
        if self.last_id is None:
            self.last_id = self.resolve_start_id()

        entries = self.event_log.read(
            self.last_id,
            count=dispatch_setting("MAX_EVENTS_PER_POLL"),
            block_ms=dispatch_setting("POLL_BLOCK_MS"),
        )
        for entry_id, fields in entries:
            self.process_entry(entry_id, fields)
        return len(entries)

    def process_entry(self, entry_id: str, fields) -> None:
        """
        Decode and handle one entry, then move the checkpoint past it.

        A malformed entry or a failing handler is logged and skipped; the
        reconciliation scan picks up whatever state it left behind.
        """
        try:
            event = decode_event(fields)
        except EventDecodeError as exc:
            logger.warning("Skipping malformed event %s: %s", entry_id, exc)
        else:
            handler = self.handlers.get(event.event_type)
            if handler is None:
                logger.debug("No handler for %s", event.event_type.value)
            else:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Handler for %s failed (entry %s, order %s)",
                        event.event_type.value, entry_id, event.order_id,
                    )

        self.last_id = entry_id
        self.save_checkpoint(entry_id)

    # ---------------------- Handlers ----------------------

    def handle_new_order_ready(self, event):
        dispatch_order(
            event.order_id,
            trigger=event.event_type.value,
            pickup_latitude=event.pickup_latitude,
            pickup_longitude=event.pickup_longitude,
            weight_g=event.total_weight_g,
        )

    def handle_offer_refused(self, event):
        if event.driver_id is None:
            logger.warning("offer_refused for order %s has no driver", event.order_id)
            return
        # Usually already applied by the refusing request; a no-op then.
        refuse(event.order_id, event.driver_id, reason=event.reason, publish=False)
        self._follow_up(event)

    def handle_offer_expired(self, event):
        if event.driver_id is None:
            logger.warning("offer_expired for order %s has no driver", event.order_id)
            return
        expire(event.order_id, event.driver_id, publish=False)
        self._follow_up(event)

    def _follow_up(self, event):
        """Dispatch the next attempt once per refused/expired offer."""
        if not claim_follow_up(event.order_id, event.driver_id):
            logger.debug(
                "Follow-up for order %s / driver %s already handled", event.order_id, event.driver_id
            )
            return
        dispatch_order(event.order_id, trigger=event.event_type.value)

    def handle_offer_accepted(self, event):
        self._withdraw_stale_offer(event, reason="order_assigned")

    def handle_manually_assigned(self, event):
        self._withdraw_stale_offer(event, reason="superseded_by_manual_assignment", keep_driver_id=event.driver_id)

    def handle_terminal(self, event):
        self._withdraw_stale_offer(event, reason=event.event_type.value)

    def _withdraw_stale_offer(self, event, reason: str, keep_driver_id: Optional[int] = None):
        """
        Clear an offer still open on the order, unless it is held by
        keep_driver_id or was sent after the event happened.
        """
        offered_driver_id = (
            Order.objects.filter(id=event.order_id).values_list("offered_driver_id", flat=True).first()
        )
        if offered_driver_id is None or offered_driver_id == keep_driver_id:
            return

        newer = OfferAttempt.objects.filter(
            order_id=event.order_id,
            driver_id=offered_driver_id,
            status=OfferAttempt.STATUS_PENDING,
            sent_at__gt=event.timestamp,
        ).exists()
        if newer:
            return

        result = withdraw_offer(event.order_id, reason, driver_id=offered_driver_id)
        if result.success and not (result.extra or {}).get("noop"):
            logger.info(
                "Cleared lingering offer on order %s for driver %s after %s",
                event.order_id, offered_driver_id, event.event_type.value,
            )

    # ---------------------- Leadership ----------------------

    def hold_leadership(self) -> bool:
        """Acquire or refresh the leader lease. Always True when the lease is disabled."""
        if not dispatch_setting("LEADER_LOCK_ENABLED"):
            self.is_leader = True
            return True

        if self._lock is None:
            self._lock = self.event_log.client.lock(
                dispatch_setting("LEADER_LOCK_KEY"),
                timeout=dispatch_setting("LEADER_LOCK_TTL_SECONDS"),
            )

        if self.is_leader:
            try:
                self._lock.reacquire()
                return True
            except LockError:
                logger.warning("Lost dispatch leadership for %s", self.consumer_name)
                self.is_leader = False

        if self._lock.acquire(blocking=False):
            logger.info("%s acquired dispatch leadership", self.consumer_name)
            self.is_leader = True
            # Another instance may have advanced the checkpoint meanwhile.
            self.last_id = None
            return True
        return False

    def release_leadership(self):
        if self._lock is not None and self.is_leader:
            try:
                self._lock.release()
            except LockError:
                logger.debug("Leader lease already gone")
        self.is_leader = False

    # ---------------------- Main loop ----------------------

    def run(self, with_scanner: bool = True):
        """Run until stop() is called. Never exits on a single failure."""
        idle_sleep = dispatch_setting("IDLE_SLEEP_SECONDS")
        backoff = dispatch_setting("ERROR_BACKOFF_SECONDS")
        follower_wait = max(dispatch_setting("LEADER_LOCK_TTL_SECONDS") / 3.0, idle_sleep)

        if with_scanner:
            self.scanner = ExpirationScanner(
                dispatch_setting("EXPIRATION_SCAN_INTERVAL_SECONDS"),
                is_leader=lambda: self.is_leader,
            )
            self.scanner.start()

        logger.info("Dispatch worker %s started at %s", self.consumer_name, timezone.now().isoformat())
        try:
            while not self._stop_event.is_set():
                try:
                    if not self.hold_leadership():
                        self._stop_event.wait(follower_wait)
                        continue
                    if not self.poll_once():
                        self._stop_event.wait(idle_sleep)
                except redis.RedisError as exc:
                    logger.warning("Event log unavailable: %s", exc)
                    self._stop_event.wait(backoff)
                except Exception:
                    logger.exception("Dispatch worker iteration failed")
                    self._stop_event.wait(backoff)
                finally:
                    close_old_connections()
        finally:
            if self.scanner is not None:
                self.scanner.stop()
                self.scanner.join(timeout=5)
            self.release_leadership()
            logger.info("Dispatch worker %s stopped", self.consumer_name)

    def stop(self):
        self._stop_event.set()
