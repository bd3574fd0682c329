"""
Error taxonomy for the order lifecycle.

Every rejection carries a stable ``code`` (the error kind), a machine-readable
``reason`` and a human-readable message. Storage exceptions are translated
into this taxonomy so callers never see raw SQLAlchemy errors.
"""
from typing import Any, Dict, Optional


class OrderError(Exception):
    """Base exception for order lifecycle errors."""

    code = "ORDER_ERROR"
    default_reason = "order_error"
    retryable = False

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses and logs."""
        payload: Dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "reason": self.reason,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(OrderError):
    """Malformed input; fixable by the caller."""

    code = "VALIDATION_ERROR"
    default_reason = "invalid_input"


class NotFoundError(OrderError):
    """Raised when an order id is unknown."""

    code = "NOT_FOUND_ERROR"
    default_reason = "not_found"


class ConflictError(OrderError):
    """Duplicate UTR, double submission or id collision."""

    code = "CONFLICT_ERROR"
    default_reason = "conflict"


class BusinessRuleError(OrderError):
    """Operation not allowed in the order's current state."""

    code = "BUSINESS_LOGIC_ERROR"
    default_reason = "business_rule"


class StaleStateError(OrderError):
    """
    Lost an optimistic-concurrency race.

    Internal signal only: the lifecycle manager re-reads the order and maps
    this to ConflictError or BusinessRuleError before it reaches a caller.
    """

    code = "STALE_STATE"
    default_reason = "stale_state"

    def __init__(
        self,
        order_id: str,
        expected_status: str,
        actual_status: Optional[str] = None,
    ):
        super().__init__(
            f"Order {order_id} is no longer {expected_status}",
            details={
                "order_id": order_id,
                "expected_status": expected_status,
                "actual_status": actual_status,
            },
        )
        self.order_id = order_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class StoreError(OrderError):
    """Transient storage failure; retry with backoff."""

    code = "DATABASE_ERROR"
    default_reason = "store_unavailable"
    retryable = True


class AuditWriteError(OrderError):
    """An audit entry could not be persisted."""

    code = "AUDIT_WRITE_ERROR"
    default_reason = "audit_unavailable"
    retryable = True
