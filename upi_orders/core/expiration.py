"""
Expiration sweeper.

Forcibly expires pending orders whose validity window has closed. Each
order is handled independently with its own conditional update, so a
concurrent UTR submission that commits first simply wins and the order is
reported as a failure of this sweep rather than aborting the batch.
"""
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

import structlog
from pydantic import BaseModel

from upi_orders.core.audit import AuditTrail
from upi_orders.core.errors import OrderError, StaleStateError
from upi_orders.core.lifecycle import AUTO_EXPIRED_REASON, expire_mutator, status_change_entry
from upi_orders.core.models import SYSTEM_ACTOR, OrderFilters, OrderStatus, utcnow
from upi_orders.core.order_store import OrderStore
from upi_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SweepFailure(BaseModel):
    order_id: str
    reason: str
    message: str


class SweepResult(BaseModel):
    expired_count: int = 0
    expired_ids: List[str] = []
    failures: List[SweepFailure] = []


class ExpiringOrder(BaseModel):
    order_id: str
    merchant_name: str
    amount: Decimal
    expires_at: datetime
    minutes_remaining: int


class ExpirationStats(BaseModel):
    total_pending: int
    total_expired: int
    expired_today: int
    expiring_soon: int


class ExpirationSweeper:
    """Batch expiry of overdue pending orders."""

    def __init__(
        self,
        store: OrderStore,
        audit_trail: AuditTrail,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
    ):
        self.store = store
        self.audit_trail = audit_trail
        self.clock = clock
        self.batch_size = batch_size

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Expire every pending order with ``expires_at < now``.

        Never raises for a single order; per-order problems are returned in
        ``failures``. Running it twice in a row expires nothing the second time.
        """
        now = now or self.clock()
        started = time.perf_counter()
        result = SweepResult()

        candidates = await self.store.find_pending_expired_before(now, limit=self.batch_size)
        for order in candidates:
            try:
                updated = await self.store.conditional_update(
                    order.order_id, OrderStatus.PENDING, expire_mutator(now), now=now
                )
            except StaleStateError as e:
                metrics.record_optimistic_conflict("sweep")
                result.failures.append(
                    SweepFailure(order_id=order.order_id, reason=e.reason, message=e.message)
                )
                continue
            except OrderError as e:
                logger.warning(
                    "sweep_order_failed", order_id=order.order_id, reason=e.reason, error=e.message
                )
                result.failures.append(
                    SweepFailure(order_id=order.order_id, reason=e.reason, message=e.message)
                )
                continue

            result.expired_count += 1
            result.expired_ids.append(order.order_id)
            metrics.record_transition(OrderStatus.PENDING.value, OrderStatus.EXPIRED.value)
            await self.audit_trail.emit(
                status_change_entry(
                    updated, OrderStatus.PENDING, SYSTEM_ACTOR, reason=AUTO_EXPIRED_REASON
                )
            )

        duration = time.perf_counter() - started
        metrics.record_sweep(
            result.expired_count, [f.reason for f in result.failures], duration
        )
        logger.info(
            "sweep_completed",
            candidates=len(candidates),
            expired_count=result.expired_count,
            failures=len(result.failures),
            duration_ms=round(duration * 1000, 2),
        )
        return result

    async def expiring_soon(
        self, within_minutes: int = 5, now: Optional[datetime] = None
    ) -> List[ExpiringOrder]:
        """Pending orders whose window closes within ``within_minutes``."""
        now = now or self.clock()
        orders = await self.store.find_expiring_between(
            now, now + timedelta(minutes=within_minutes)
        )
        return [
            ExpiringOrder(
                order_id=o.order_id,
                merchant_name=o.merchant_name,
                amount=o.amount,
                expires_at=o.expires_at,
                minutes_remaining=int((o.expires_at - now).total_seconds() // 60),
            )
            for o in orders
        ]

    async def stats(self, now: Optional[datetime] = None) -> ExpirationStats:
        now = now or self.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        counts = await self.store.count_by_status()
        expired_today = await self.store.count(
            OrderFilters(status=OrderStatus.EXPIRED), updated_after=today
        )
        expiring = await self.store.count(
            OrderFilters(status=OrderStatus.PENDING),
            expires_after=now,
            expires_before=now + timedelta(minutes=5),
        )
        return ExpirationStats(
            total_pending=counts.get(OrderStatus.PENDING.value, 0),
            total_expired=counts.get(OrderStatus.EXPIRED.value, 0),
            expired_today=expired_today,
            expiring_soon=expiring,
        )
