"""Access to the DISPATCH settings dict with built-in defaults."""

from django.conf import settings

DEFAULTS = {
    "EVENT_STREAM_KEY": "dispatch:events",
    "EVENT_STREAM_MAXLEN": 100000,
    "CONSUMER_NAME": "assignment-worker",
    "POLL_BLOCK_MS": 5000,
    "MAX_EVENTS_PER_POLL": 10,
    "IDLE_SLEEP_SECONDS": 0.2,
    "ERROR_BACKOFF_SECONDS": 2,
    "OFFER_TTL_SECONDS": 60,
    "MAX_ASSIGNMENT_ATTEMPTS": 5,
    "SEARCH_RADIUS_METERS": 10000,
    "LOCATION_FRESHNESS_SECONDS": 300,
    "EXPIRATION_SCAN_INTERVAL_SECONDS": 10,
    "EXPIRATION_SCAN_BATCH_SIZE": 50,
    "RETRY_STALLED_AFTER_SECONDS": 120,
    "PUBLISH_RETRIES": 3,
    "PUBLISH_BACKOFF_MS": 100,
    "LEADER_LOCK_ENABLED": True,
    "LEADER_LOCK_KEY": "dispatch:worker:leader",
    "LEADER_LOCK_TTL_SECONDS": 30,
}


def dispatch_setting(name: str):
    """Read one dispatch tunable, falling back to DEFAULTS."""
    overrides = getattr(settings, "DISPATCH", {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
