"""
Realtime app: WebSocket and push delivery of dispatch notifications.

Key Components:
    - consumers/: WebSocket consumers (driver, client)
    - middleware.py: JWT/Cookie authentication for WebSocket connections
    - notifications.py: group_send helpers for driver_<id> and user_<id>
    - push.py: push-notification gateway, delivered through Celery
"""
