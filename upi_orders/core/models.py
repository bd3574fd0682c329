"""
Domain types for the order payment lifecycle.

Order state machine:

    pending --submit_utr--> pending-verification
    pending --expire (sweep or lazy check)--> expired
    pending-verification --decide(completed)--> completed
    pending-verification --decide(failed)--> failed
    pending-verification --remove_utr--> pending | expired

completed, failed and expired are terminal.
"""
from __future__ import annotations

import math
import re
import secrets
import string
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from upi_orders.config import VPA_PATTERN
from upi_orders.core.errors import ValidationError

UTR_PATTERN = re.compile(r"^[A-Za-z0-9]{12}$")
ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits
SYSTEM_ACTOR = "system"


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_order_id(now: Optional[datetime] = None) -> str:
    """Build an order id of the form ``UPI<epoch-millis><5 random chars>``."""
    now = now or utcnow()
    millis = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(5))
    return f"UPI{millis}{suffix}"


def validate_utr(utr: Any) -> str:
    """Check UTR format before any storage access."""
    if not isinstance(utr, str) or not UTR_PATTERN.match(utr):
        raise ValidationError(
            "UTR must be 12-digit alphanumeric",
            reason="invalid_utr",
            details={"field": "utr"},
        )
    return utr


def format_validation_error(error: PydanticValidationError) -> str:
    """Flatten pydantic errors into ``field: message`` pairs."""
    parts = []
    for err in error.errors():
        path = ".".join(str(p) for p in err.get("loc", ()))
        prefix = f"{path}: " if path else ""
        parts.append(f"{prefix}{err.get('msg')}")
    return ", ".join(parts)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PENDING_VERIFICATION = "pending-verification"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        """Coerce a raw value, raising ValidationError for unknown statuses."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                "Invalid status",
                reason="invalid_status",
                details={"status": value, "allowed": [s.value for s in cls]},
            )


TERMINAL_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.EXPIRED}
)

# Every edge any writer may take.
TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PENDING_VERIFICATION, OrderStatus.EXPIRED}
    ),
    OrderStatus.PENDING_VERIFICATION: frozenset(
        {
            OrderStatus.COMPLETED,
            OrderStatus.FAILED,
            OrderStatus.PENDING,
            OrderStatus.EXPIRED,
        }
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

# Edges reachable through an operator decision.
DECISION_EDGES = frozenset(
    {
        (OrderStatus.PENDING, OrderStatus.EXPIRED),
        (OrderStatus.PENDING_VERIFICATION, OrderStatus.COMPLETED),
        (OrderStatus.PENDING_VERIFICATION, OrderStatus.FAILED),
    }
)


def is_valid_transition(old: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS[old]


class IdentityContext(BaseModel):
    """Caller identity as supplied by the external identity provider."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    role: str = Field(default="merchant")

    @property
    def is_admin(self) -> bool:
        return self.role.lower() == "admin"


class ClientContext(BaseModel):
    """Request provenance recorded in order metadata and audit entries."""

    model_config = ConfigDict(frozen=True)

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None


class CreateOrderRequest(BaseModel):
    """Validated input for order creation."""

    amount: Decimal = Field(..., ge=1, le=100000)
    merchant_name: str = Field(..., min_length=1, max_length=100)
    pay_address: str = Field(..., min_length=3, max_length=255)

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, v: Decimal) -> Decimal:
        return v.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    @field_validator("merchant_name", mode="before")
    @classmethod
    def strip_merchant_name(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("pay_address")
    @classmethod
    def validate_pay_address(cls, v: str) -> str:
        v = v.strip()
        if not VPA_PATTERN.match(v):
            raise ValueError("Invalid UPI ID format")
        return v

    @classmethod
    def parse(cls, data: Any) -> "CreateOrderRequest":
        """Build a request, translating pydantic errors into ValidationError."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                format_validation_error(e),
                reason="invalid_order",
                details={"errors": [err["msg"] for err in e.errors()]},
            )


class Order(BaseModel):
    """
    A single payment request with a bounded validity window.

    Instances are immutable snapshots of a stored row. Changes go through
    ``OrderStore.conditional_update`` with a mutator returning a modified copy.
    """

    model_config = ConfigDict(frozen=True)

    order_id: str
    amount: Decimal
    merchant_name: str
    pay_address: str
    status: OrderStatus = OrderStatus.PENDING
    utr: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def needs_expiry(self, now: Optional[datetime] = None) -> bool:
        """Pending but past its window; the sweeper or a lazy check will expire it."""
        return self.status == OrderStatus.PENDING and self.is_expired(now)

    def can_submit_utr(self, now: Optional[datetime] = None) -> bool:
        return self.status == OrderStatus.PENDING and not self.is_expired(now)

    def can_update_status(self) -> bool:
        return self.status == OrderStatus.PENDING_VERIFICATION

    def with_changes(self, **changes: Any) -> "Order":
        """Copy with updated fields; metadata keys are merged, not replaced."""
        metadata = changes.pop("metadata", None)
        if metadata is not None:
            merged = dict(self.metadata)
            merged.update(metadata)
            changes["metadata"] = merged
        return self.model_copy(update=changes)


class OrderFilters(BaseModel):
    """Filters for order listings."""

    status: Optional[OrderStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class PageRequest(BaseModel):
    """One-based pagination."""

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class OrderPage(BaseModel):
    orders: List[Order]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


class OrderStats(BaseModel):
    total: int
    by_status: Dict[str, int]
    recent_count: int

