"""
Order management service - offer protocol and mission lifecycle.

This module handles:
    - Creating orders
    - Proposing, accepting, refusing, expiring and withdrawing offers
    - Manual assignment by dispatchers
    - Mission progress, completion and cancellation
"""

from .offer_protocol import (
    OrderResult,
    propose,
    accept,
    refuse,
    expire,
    withdraw_offer,
    manually_assign,
    claim_follow_up,
)
from .missions import (
    create_order,
    advance_mission,
    cancel_order_by_admin,
    release_driver_locked,
)
from .exceptions import (
    OrderNotFoundError,
    InvalidMissionTransitionError,
)

__all__ = [
    # Offer protocol
    "OrderResult",
    "propose",
    "accept",
    "refuse",
    "expire",
    "withdraw_offer",
    "manually_assign",
    "claim_follow_up",
    # Missions
    "create_order",
    "advance_mission",
    "cancel_order_by_admin",
    "release_driver_locked",
    # Exceptions
    "OrderNotFoundError",
    "InvalidMissionTransitionError",
]
