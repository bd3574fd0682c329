"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from upi_orders.core.audit import ActionCount, ActorActivity, AuditAction, AuditEntry
from upi_orders.core.expiration import ExpiringOrder, SweepFailure
from upi_orders.core.models import Order, OrderPage
from upi_orders.core.settings_provider import SettingsSnapshot


class CreateOrderBody(BaseModel):
    """Request schema for creating an order."""

    amount: Decimal = Field(..., description="Amount in INR (1 to 100000)")
    merchant_name: str = Field(..., description="Merchant display name")
    pay_address: str = Field(..., description="UPI ID (VPA) receiving the payment")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": "100.00", "merchant_name": "Acme", "pay_address": "acme@bank"}
            ]
        }
    }


class OrderResponse(BaseModel):
    """Response schema for a single order."""

    order_id: str = Field(..., description="Order ID")
    amount: Decimal = Field(..., description="Amount in INR")
    merchant_name: str
    pay_address: str
    status: str = Field(..., description="Order status")
    utr: Optional[str] = Field(default=None, description="Submitted UTR")
    created_by: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    time_remaining_seconds: int = Field(..., description="Seconds until the order expires")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_order(cls, order: Order, now: datetime) -> "OrderResponse":
        remaining = max(0, int((order.expires_at - now).total_seconds()))
        return cls(
            order_id=order.order_id,
            amount=order.amount,
            merchant_name=order.merchant_name,
            pay_address=order.pay_address,
            status=order.status.value,
            utr=order.utr,
            created_by=order.created_by,
            created_at=order.created_at,
            updated_at=order.updated_at,
            expires_at=order.expires_at,
            time_remaining_seconds=remaining,
            metadata=order.metadata,
        )


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def from_page(cls, page: OrderPage, now: datetime) -> "OrderListResponse":
        return cls(
            orders=[OrderResponse.from_order(o, now) for o in page.orders],
            total=page.total,
            page=page.page,
            limit=page.limit,
            total_pages=page.total_pages,
        )


class SubmitUtrBody(BaseModel):
    """Request schema for UTR submission."""

    utr: str = Field(..., description="12-character alphanumeric UTR")

    model_config = {"json_schema_extra": {"examples": [{"utr": "ABCD12345678"}]}}


class UtrStatusResponse(BaseModel):
    order_id: str
    status: str
    utr: Optional[str] = None
    utr_submitted_at: Optional[str] = None
    can_submit_utr: bool


class UpdateStatusBody(BaseModel):
    """Request schema for an operator decision."""

    status: str = Field(..., description="completed, failed or expired")
    reason: Optional[str] = Field(default=None, max_length=500, description="Admin notes")


class SweepResponse(BaseModel):
    expired_count: int
    expired_ids: List[str]
    failures: List[SweepFailure]
    audit_retried: int = 0
    audit_pending: int = 0
    timestamp: datetime


class ExpirationOverviewResponse(BaseModel):
    total_pending: int
    total_expired: int
    expired_today: int
    expiring_soon: List[ExpiringOrder]


class AuditLogListResponse(BaseModel):
    entries: List[AuditEntry]
    total: int
    page: int
    limit: int


ACTION_CATEGORIES: Dict[AuditAction, str] = {
    AuditAction.ORDER_CREATED: "order_actions",
    AuditAction.UTR_SUBMITTED: "order_actions",
    AuditAction.ORDER_STATUS_UPDATED: "order_actions",
    AuditAction.SETTINGS_UPDATED: "system_actions",
}


class ActionShare(ActionCount):
    percentage: float


class AuditStatsResponse(BaseModel):
    total_actions: int
    action_counts: List[ActionShare]
    categories: Dict[str, List[ActionShare]]
    actor_activity: List[ActorActivity]

    @classmethod
    def from_counts(
        cls, counts: List[ActionCount], actor_activity: List[ActorActivity]
    ) -> "AuditStatsResponse":
        """Attach each action's share of the total, in percent to two places."""
        total = sum(c.count for c in counts)
        shares = [
            ActionShare(
                **c.model_dump(),
                percentage=round(c.count * 100 / total, 2) if total else 0.0,
            )
            for c in counts
        ]
        categories: Dict[str, List[ActionShare]] = {
            name: [] for name in sorted(set(ACTION_CATEGORIES.values()))
        }
        for share in shares:
            categories[ACTION_CATEGORIES[share.action]].append(share)
        return cls(
            total_actions=total,
            action_counts=shares,
            categories=categories,
            actor_activity=actor_activity,
        )


class SettingsResponse(BaseModel):
    timer_duration_minutes: int
    enabled_channels: List[str]
    static_pay_address: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: SettingsSnapshot) -> "SettingsResponse":
        return cls(
            timer_duration_minutes=snapshot.timer_duration_minutes,
            enabled_channels=sorted(snapshot.enabled_channels),
            static_pay_address=snapshot.static_pay_address,
            updated_at=snapshot.updated_at,
            updated_by=snapshot.updated_by,
        )


class ChannelToggleBody(BaseModel):
    enabled: bool


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
