"""Custom exceptions for order and mission management."""


class OrderNotFoundError(Exception):
    """Raised when an order cannot be found (or is not visible to the caller)."""
    pass


class InvalidMissionTransitionError(Exception):
    """Raised when a mission status change is not allowed from the current status."""
    pass
