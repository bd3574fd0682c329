"""SQLAlchemy database models for the order lifecycle."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from upi_orders.core.models import utcnow


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderRecord(Base):
    """
    Orders table.

    ``utr`` carries a unique index; NULLs are not constrained, so the index
    only covers orders that have a UTR. ``version`` backs the optimistic
    concurrency check in ``OrderStore.conditional_update``.
    """

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    merchant_name: Mapped[str] = mapped_column(String(100), nullable=False)
    pay_address: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    utr: Mapped[str | None] = mapped_column(String(12), nullable=True, unique=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    # "metadata" is reserved on declarative classes
    order_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 1 AND amount <= 100000", name="amount_in_range"),
        CheckConstraint(
            "status IN ('pending', 'pending-verification', 'completed', 'failed', 'expired')",
            name="valid_order_status",
        ),
        Index("idx_orders_status", "status"),
        Index("idx_orders_created_by", "created_by"),
        Index("idx_orders_expires_at", "expires_at"),
        Index("idx_orders_created_at", "created_at"),
        Index("idx_orders_created_by_status", "created_by", "status"),
        Index("idx_orders_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation of OrderRecord."""
        return (
            f"<OrderRecord(order_id={self.order_id}, amount={self.amount}, "
            f"status={self.status})>"
        )


class AuditLogRecord(Base):
    """
    Audit trail table.

    Append-only: rows are only removed by the age-based retention purge.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_audit_logs_timestamp", "timestamp"),
        Index("idx_audit_logs_actor", "actor_id", "timestamp"),
        Index("idx_audit_logs_action", "action", "timestamp"),
        Index("idx_audit_logs_entity", "entity_type", "entity_id", "timestamp"),
    )

    def __repr__(self) -> str:
        """String representation of AuditLogRecord."""
        return (
            f"<AuditLogRecord(id={self.id}, action={self.action}, "
            f"entity={self.entity_type}:{self.entity_id})>"
        )


class SystemSettingsRecord(Base):
    """Singleton row holding operator-managed settings."""

    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    timer_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    enabled_channels: Mapped[list] = mapped_column(JSON, nullable=False)
    static_pay_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "timer_duration_minutes >= 1 AND timer_duration_minutes <= 60",
            name="timer_duration_in_range",
        ),
    )

    def __repr__(self) -> str:
        """String representation of SystemSettingsRecord."""
        return (
            f"<SystemSettingsRecord(timer={self.timer_duration_minutes}, "
            f"updated_by={self.updated_by})>"
        )
