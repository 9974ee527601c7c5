"""
Order Engine Error Taxonomy

Every failure the engine reports is an OrderEngineError subclass carrying
enough context (order id, current status, attempted target) for the API
layer to render a user-facing message.

    ValidationError         bad input, nothing persisted
    AuthorizationError      tenant/branch mismatch
    OrderNotFoundError      unknown order id
    InvalidTransitionError  state machine rule violation
    ConflictError           lost optimistic-concurrency race (retryable)
    TransientStorageError   infrastructure failure (retryable with backoff)
"""

from typing import Any, Optional


class OrderEngineError(Exception):
    """Base class for all engine errors."""

    code: str = "order_engine_error"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        order_id: Optional[str] = None,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.current_status = _status_value(current_status)
        self.target_status = _status_value(target_status)
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "order_id": self.order_id,
            "current_status": self.current_status,
            "target_status": self.target_status,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(OrderEngineError):
    """Rejected input: empty cart, bad quantity, unknown or unavailable item."""

    code = "validation_error"
    http_status = 400


class AuthorizationError(OrderEngineError):
    """The order or branch belongs to another tenant or branch."""

    code = "authorization_error"
    http_status = 403


class OrderNotFoundError(OrderEngineError):
    code = "order_not_found"
    http_status = 404


class InvalidTransitionError(OrderEngineError):
    """The requested status change is not allowed from the current status."""

    code = "invalid_transition"
    http_status = 409


class ConflictError(OrderEngineError):
    """
    The order changed between read and write.

    This is the only error the engine recommends retrying automatically:
    it signals benign contention, not a logic fault.
    """

    code = "conflict"
    http_status = 409
    retryable = True


class TransientStorageError(OrderEngineError):
    """Storage was unreachable or a lock could not be taken."""

    code = "transient_storage_error"
    http_status = 503
    retryable = True


def _status_value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", str(status))
