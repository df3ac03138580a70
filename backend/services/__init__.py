"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - ledger: Append-only order and driver status history
    - order_management: Offer protocol and mission lifecycle
    - matching: Candidate search for an order's pickup
    - dispatch: Event log, dispatch attempts, escalation and the worker
"""

# Expose commonly used functions at package level
from .order_management import (
    OrderResult,
    create_order,
    propose,
    accept,
    refuse,
    expire,
    withdraw_offer,
    manually_assign,
    advance_mission,
    cancel_order_by_admin,
    OrderNotFoundError,
    InvalidMissionTransitionError,
)
from .matching import find_candidates, find_best_candidate
from .dispatch.assignment import dispatch_order, DispatchOutcome

__all__ = [
    # Order management
    "OrderResult",
    "create_order",
    "propose",
    "accept",
    "refuse",
    "expire",
    "withdraw_offer",
    "manually_assign",
    "advance_mission",
    "cancel_order_by_admin",
    # Matching
    "find_candidates",
    "find_best_candidate",
    # Dispatch
    "dispatch_order",
    "DispatchOutcome",
    # Exceptions
    "OrderNotFoundError",
    "InvalidMissionTransitionError",
]
