"""
Order Errors
============
Error taxonomy for the order lifecycle core.

Recovery policy per error kind:
- ValidationError: surfaced to the initiating user, never retried
- InvalidTransition: benign race outcome, client refetches
- OrderLocked: hard error, never retried
- AuthorizationError: fatal for the attempted action, never retried
- ConflictError: refetch and retry (bounded), then surfaced
"""

from typing import Any, Dict, Optional


class OrderError(Exception):
    """Base class for all order lifecycle errors."""

    code = "order_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {
            key: value for key, value in context.items() if value is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (safe for API responses)."""
        return {
            "error": self.code,
            "message": self.message,
            **{
                key: getattr(value, "value", value)
                for key, value in self.context.items()
            }
        }


class ValidationError(OrderError):
    """Malformed input or a store row that does not match its schema."""
    code = "validation_error"


class InvalidTransition(OrderError):
    """Transition attempted from a status that is not its predecessor."""
    code = "invalid_transition"


class OrderLocked(OrderError):
    """Line-item mutation attempted after the order left Unconfirmed."""
    code = "order_locked"


class AuthorizationError(OrderError):
    """Actor's role does not permit the attempted action."""
    code = "authorization_error"


class ConflictError(OrderError):
    """Optimistic concurrency check failed at the store."""
    code = "conflict"


class OrderNotFound(OrderError):
    """No order (or line item) with the requested id."""
    code = "not_found"


class StoreUnavailable(OrderError):
    """Store timed out, circuit is open, or failed for an unclassified reason."""
    code = "store_unavailable"


def describe(error: Exception, order_id: Optional[str] = None) -> str:
    """One-line description for log messages."""
    prefix = f"order {order_id}: " if order_id else ""
    if isinstance(error, OrderError):
        return f"{prefix}{error.code}: {error.message}"
    return f"{prefix}{type(error).__name__}: {error}"
