"""Core order lifecycle logic."""
from .errors import (
    AuditWriteError,
    BusinessRuleError,
    ConflictError,
    NotFoundError,
    OrderError,
    StaleStateError,
    StoreError,
    ValidationError,
)
from .models import (
    ClientContext,
    CreateOrderRequest,
    IdentityContext,
    Order,
    OrderStatus,
)

__all__ = [
    "AuditWriteError",
    "BusinessRuleError",
    "ClientContext",
    "ConflictError",
    "CreateOrderRequest",
    "IdentityContext",
    "NotFoundError",
    "Order",
    "OrderError",
    "OrderStatus",
    "StaleStateError",
    "StoreError",
    "ValidationError",
]
