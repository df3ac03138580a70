"""Celery tasks for order-related background processing."""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=5)
def deliver_push_notification(self, token: str, title: str, body: str, data: dict):
    """
    Hand one push message to the configured gateway.

    Queued by realtime.push.enqueue_push after the triggering transaction
    commits. Gateway errors are retried a few times, then dropped.
    """
    from realtime.push import get_push_gateway

    try:
        return get_push_gateway().send(token, title, body, data)
    except Exception as exc:
        logger.warning("Push '%s' failed: %s", title, exc)
        raise self.retry(exc=exc)


@shared_task
def scan_expired_offers_task():
    """
    Periodic backstop for the dispatch worker.

    Emits offer_expired for offers past their deadline and re-announces
    stalled pending orders. Safe to run next to the worker's own scanner.
    """
    from services.dispatch.reconciliation import scan_expired_offers

    expired, cleaned, retried = scan_expired_offers()
    return {"expired": expired, "cleaned": cleaned, "retried": retried}
