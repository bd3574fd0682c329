"""
Order lifecycle manager.

Every state change follows the same two steps:

1. Validate against the order as read, then apply the change with
   ``OrderStore.conditional_update`` keyed on the status the decision was
   based on. Losing a race surfaces as StaleStateError, which is re-checked
   against a fresh read and reported as ConflictError or BusinessRuleError.
2. Emit audit entries through the ``AuditTrail``. The mutation has already
   committed; audit failures are queued for retry and never reach the caller.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from upi_orders.core.audit import (
    AuditAction,
    AuditEntry,
    AuditTrail,
    EntityType,
    OrderCreatedDetails,
    StatusChangedDetails,
    UtrSubmittedDetails,
)
from upi_orders.core.errors import (
    BusinessRuleError,
    ConflictError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from upi_orders.core.models import (
    DECISION_EDGES,
    SYSTEM_ACTOR,
    ClientContext,
    CreateOrderRequest,
    Order,
    OrderFilters,
    OrderPage,
    OrderStats,
    OrderStatus,
    PageRequest,
    generate_order_id,
    utcnow,
    validate_utr,
)
from upi_orders.core.order_store import Mutator, OrderStore
from upi_orders.core.settings_provider import SettingsProvider
from upi_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ORDER_ID_RETRIES = 3
AUTO_EXPIRED_REASON = "auto_expired"
UTR_SUBMITTED_REASON = "UTR submitted by customer"
DEFAULT_REMOVAL_REASON = "admin correction"
RECENT_WINDOW = timedelta(hours=24)

NOT_PENDING_MESSAGE = "Order status is {status}. UTR can only be submitted for pending orders."
EXPIRED_MESSAGE = "Order has expired. UTR submission not allowed."
UTR_ALREADY_SUBMITTED_MESSAGE = "UTR already submitted for this order"
UTR_ALREADY_USED_MESSAGE = "This UTR has already been used for another order"


def expire_mutator(now: datetime, actor_id: str = SYSTEM_ACTOR) -> Mutator:
    """Mutator moving a pending order to expired."""

    def mutate(order: Order) -> Order:
        return order.with_changes(
            status=OrderStatus.EXPIRED,
            metadata={"expired_at": now.isoformat(), "expired_by": actor_id},
        )

    return mutate


def status_change_entry(
    order: Order,
    old_status: OrderStatus,
    actor_id: str,
    reason: Optional[str] = None,
    removed_utr: Optional[str] = None,
    client: Optional[ClientContext] = None,
) -> AuditEntry:
    """``order_status_updated`` entry for an order as written."""
    return AuditEntry(
        action=AuditAction.ORDER_STATUS_UPDATED,
        entity_type=EntityType.ORDER,
        entity_id=order.order_id,
        actor_id=actor_id,
        details=StatusChangedDetails(
            old_status=old_status.value,
            new_status=order.status.value,
            reason=reason,
            removed_utr=removed_utr,
        ),
        timestamp=order.updated_at,
        ip_address=client.ip_address if client else None,
        user_agent=client.user_agent if client else None,
    )


class OrderLifecycleManager:
    """
    Create, submit, decide and correct orders.

    Dependencies are injected so tests can control the clock, id
    generation, settings and audit storage.
    """

    def __init__(
        self,
        store: OrderStore,
        audit_trail: AuditTrail,
        settings_provider: SettingsProvider,
        clock: Callable[[], datetime] = utcnow,
        order_id_factory: Callable[[datetime], str] = generate_order_id,
    ):
        self.store = store
        self.audit_trail = audit_trail
        self.settings_provider = settings_provider
        self.clock = clock
        self.order_id_factory = order_id_factory

    async def create_order(
        self,
        request: CreateOrderRequest | Dict[str, Any],
        actor_id: str,
        client: Optional[ClientContext] = None,
    ) -> Order:
        """
        Create a pending order.

        Args:
            request: Amount, merchant name and pay address
            actor_id: Creating user
            client: Request provenance stored in metadata

        Returns:
            Order: The stored order

        Raises:
            ValidationError: If the request is malformed
            ConflictError: If no unique order id could be allocated
        """
        request = CreateOrderRequest.parse(request)
        snapshot = await self.settings_provider.get_snapshot()
        now = self.clock()

        pay_address = snapshot.static_pay_address or request.pay_address
        metadata: Dict[str, Any] = {
            "timer_duration_minutes": snapshot.timer_duration_minutes,
            "enabled_channels": sorted(snapshot.enabled_channels),
            "static_pay_address_applied": snapshot.static_pay_address is not None,
        }
        if client is not None:
            metadata.update(
                customer_ip=client.ip_address,
                user_agent=client.user_agent,
                referrer=client.referrer,
            )

        order: Optional[Order] = None
        for attempt in range(ORDER_ID_RETRIES + 1):
            candidate = Order(
                order_id=self.order_id_factory(now),
                amount=request.amount,
                merchant_name=request.merchant_name,
                pay_address=pay_address,
                status=OrderStatus.PENDING,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
                expires_at=now + snapshot.timer_duration,
                metadata=metadata,
            )
            try:
                order = await self.store.insert(candidate)
                break
            except ConflictError as e:
                if e.reason != "order_id_collision":
                    raise
                logger.warning(
                    "order_id_collision", order_id=candidate.order_id, attempt=attempt + 1
                )

        if order is None:
            raise ConflictError(
                "Could not allocate a unique order id", reason="order_id_collision"
            )

        metrics.record_order_created(float(order.amount))
        logger.info(
            "order_created",
            order_id=order.order_id,
            amount=str(order.amount),
            created_by=actor_id,
            expires_at=order.expires_at.isoformat(),
        )

        await self.audit_trail.emit(
            AuditEntry(
                action=AuditAction.ORDER_CREATED,
                entity_type=EntityType.ORDER,
                entity_id=order.order_id,
                actor_id=actor_id,
                details=OrderCreatedDetails(
                    amount=order.amount,
                    merchant_name=order.merchant_name,
                    pay_address=order.pay_address,
                    expires_at=order.expires_at,
                    timer_duration_minutes=snapshot.timer_duration_minutes,
                ),
                timestamp=order.updated_at,
                ip_address=client.ip_address if client else None,
                user_agent=client.user_agent if client else None,
            )
        )
        return order

    async def get_order(self, order_id: str) -> Order:
        """
        Load an order, expiring it first if its window has closed.

        Raises:
            NotFoundError: If the order does not exist
        """
        order = await self._load(order_id)
        now = self.clock()
        if order.needs_expiry(now):
            order = await self._lazy_expire(order, now)
        return order

    async def submit_utr(
        self,
        order_id: str,
        utr: str,
        actor_id: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> Order:
        """
        Record the payer's UTR and move the order to pending-verification.

        Args:
            order_id: Target order
            utr: 12-character alphanumeric bank reference
            actor_id: Submitting user; defaults to the order's creator
            client: Request provenance

        Returns:
            Order: The updated order

        Raises:
            ValidationError: Malformed UTR
            NotFoundError: Unknown order
            BusinessRuleError: Order expired or not pending
            ConflictError: UTR already submitted or used by another order
        """
        try:
            utr = validate_utr(utr)
        except ValidationError:
            metrics.record_utr_submission("invalid")
            raise

        order = await self._load(order_id)
        now = self.clock()

        if order.needs_expiry(now):
            await self._lazy_expire(order, now)
            metrics.record_utr_submission("rejected")
            raise BusinessRuleError(EXPIRED_MESSAGE, reason="order_expired")

        try:
            self._check_submittable(order)
            if order.utr:
                raise ConflictError(UTR_ALREADY_SUBMITTED_MESSAGE, reason="utr_already_submitted")
            holder = await self.store.find_by_utr(utr, exclude_id=order_id)
            if holder is not None:
                logger.info(
                    "utr_already_used", order_id=order_id, holder_order_id=holder.order_id
                )
                raise ConflictError(UTR_ALREADY_USED_MESSAGE, reason="utr_already_used")
        except ConflictError:
            metrics.record_utr_submission("conflict")
            raise
        except BusinessRuleError:
            metrics.record_utr_submission("rejected")
            raise

        actor_id = actor_id or order.created_by
        stamps: Dict[str, Any] = {"utr_submitted_at": now.isoformat()}
        if client is not None:
            stamps.update(
                utr_submission_ip=client.ip_address,
                utr_submission_user_agent=client.user_agent,
            )

        def mutate(current: Order) -> Order:
            return current.with_changes(
                status=OrderStatus.PENDING_VERIFICATION, utr=utr, metadata=stamps
            )

        try:
            updated = await self.store.conditional_update(
                order_id, OrderStatus.PENDING, mutate, now=now
            )
        except StaleStateError:
            metrics.record_optimistic_conflict("submit_utr")
            error = await self._stale_submission_error(order_id)
            metrics.record_utr_submission(
                "conflict" if isinstance(error, ConflictError) else "rejected"
            )
            raise error
        except ConflictError:
            metrics.record_utr_submission("conflict")
            raise

        metrics.record_utr_submission("accepted")
        metrics.record_transition(OrderStatus.PENDING.value, updated.status.value)
        logger.info("utr_submitted", order_id=order_id, actor_id=actor_id)

        await self.audit_trail.emit(
            AuditEntry(
                action=AuditAction.UTR_SUBMITTED,
                entity_type=EntityType.ORDER,
                entity_id=order_id,
                actor_id=actor_id,
                details=UtrSubmittedDetails(
                    utr=utr, previous_status=OrderStatus.PENDING.value
                ),
                timestamp=updated.updated_at,
                ip_address=client.ip_address if client else None,
                user_agent=client.user_agent if client else None,
            )
        )
        await self.audit_trail.emit(
            status_change_entry(
                updated,
                OrderStatus.PENDING,
                actor_id,
                reason=UTR_SUBMITTED_REASON,
                client=client,
            )
        )
        return updated

    async def decide(
        self,
        order_id: str,
        new_status: OrderStatus | str,
        actor_id: str,
        reason: Optional[str] = None,
        client: Optional[ClientContext] = None,
    ) -> Order:
        """
        Resolve an order: complete or fail a verification, or expire a pending order.

        Raises:
            ValidationError: Unknown status
            NotFoundError: Unknown order
            BusinessRuleError: Terminal order or an edge outside the decision table
            ConflictError: Another writer changed the order first
        """
        target = OrderStatus.parse(new_status)
        order = await self._load(order_id)
        now = self.clock()

        self._check_not_terminal(order)
        if (order.status, target) not in DECISION_EDGES:
            raise BusinessRuleError(
                f"Cannot change order status from {order.status.value} to {target.value}",
                reason="invalid_transition",
                details={"current_status": order.status.value, "requested_status": target.value},
            )

        stamps: Dict[str, Any] = {
            "last_updated_by": actor_id,
            "last_updated_at": now.isoformat(),
        }
        if reason:
            stamps["admin_notes"] = reason
        if target == OrderStatus.EXPIRED:
            stamps.update(expired_at=now.isoformat(), expired_by=actor_id)

        def mutate(current: Order) -> Order:
            return current.with_changes(status=target, metadata=stamps)

        previous = order.status
        try:
            updated = await self.store.conditional_update(order_id, previous, mutate, now=now)
        except StaleStateError:
            metrics.record_optimistic_conflict("decide")
            raise await self._stale_update_error(order_id)

        metrics.record_transition(previous.value, target.value)
        logger.info(
            "order_status_updated",
            order_id=order_id,
            old_status=previous.value,
            new_status=target.value,
            actor_id=actor_id,
        )
        await self.audit_trail.emit(
            status_change_entry(updated, previous, actor_id, reason=reason, client=client)
        )
        return updated

    async def remove_utr(
        self,
        order_id: str,
        actor_id: str,
        reason: str = DEFAULT_REMOVAL_REASON,
        client: Optional[ClientContext] = None,
    ) -> Order:
        """
        Administrative correction: clear the UTR of an order under verification.

        The order returns to pending while its window is open, otherwise it
        becomes expired.

        Raises:
            NotFoundError: Unknown order
            BusinessRuleError: No UTR, or the order is not under verification
            ConflictError: Another writer changed the order first
        """
        order = await self._load(order_id)
        if not order.utr:
            raise BusinessRuleError("No UTR found for this order", reason="no_utr")
        self._check_not_terminal(order)
        if not order.can_update_status():
            raise BusinessRuleError(
                f"Cannot remove UTR from an order with status {order.status.value}",
                reason="invalid_transition",
            )

        now = self.clock()
        target = OrderStatus.PENDING if now < order.expires_at else OrderStatus.EXPIRED
        stamps: Dict[str, Any] = {
            "utr_removed_at": now.isoformat(),
            "utr_removed_reason": reason[:1].upper() + reason[1:],
            "last_updated_by": actor_id,
            "last_updated_at": now.isoformat(),
        }
        if target == OrderStatus.EXPIRED:
            stamps.update(expired_at=now.isoformat(), expired_by=actor_id)

        def mutate(current: Order) -> Order:
            return current.with_changes(status=target, utr=None, metadata=stamps)

        try:
            updated = await self.store.conditional_update(
                order_id, OrderStatus.PENDING_VERIFICATION, mutate, now=now
            )
        except StaleStateError:
            metrics.record_optimistic_conflict("remove_utr")
            raise await self._stale_update_error(order_id)

        metrics.record_transition(OrderStatus.PENDING_VERIFICATION.value, target.value)
        logger.info(
            "utr_removed",
            order_id=order_id,
            new_status=target.value,
            actor_id=actor_id,
            reason=reason,
        )
        await self.audit_trail.emit(
            status_change_entry(
                updated,
                OrderStatus.PENDING_VERIFICATION,
                actor_id,
                reason=reason,
                removed_utr=order.utr,
                client=client,
            )
        )
        return updated

    async def list_orders(
        self,
        created_by: str,
        filters: Optional[OrderFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> OrderPage:
        """Orders created by one user, newest first."""
        return await self.store.list_by_creator(created_by, filters, page)

    async def list_all_orders(
        self,
        filters: Optional[OrderFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> OrderPage:
        return await self.store.list_all(filters, page)

    async def order_stats(self, created_by: Optional[str] = None) -> OrderStats:
        """Counts by status plus orders created in the last 24 hours."""
        counts = await self.store.count_by_status(created_by)
        by_status = {status.value: counts.get(status.value, 0) for status in OrderStatus}
        recent = await self.store.count(
            OrderFilters(start_date=self.clock() - RECENT_WINDOW), created_by=created_by
        )
        return OrderStats(
            total=sum(by_status.values()), by_status=by_status, recent_count=recent
        )

    async def _load(self, order_id: str) -> Order:
        order = await self.store.find_by_id(order_id)
        if order is None:
            raise NotFoundError("Order not found", details={"order_id": order_id})
        return order

    async def _lazy_expire(self, order: Order, now: datetime) -> Order:
        """Expire an overdue pending order on read; a lost race returns the winner's state."""
        try:
            updated = await self.store.conditional_update(
                order.order_id, OrderStatus.PENDING, expire_mutator(now), now=now
            )
        except StaleStateError:
            metrics.record_optimistic_conflict("lazy_expiry")
            return await self._load(order.order_id)

        metrics.record_transition(OrderStatus.PENDING.value, OrderStatus.EXPIRED.value)
        logger.info("order_auto_expired", order_id=order.order_id)
        await self.audit_trail.emit(
            status_change_entry(
                updated, OrderStatus.PENDING, SYSTEM_ACTOR, reason=AUTO_EXPIRED_REASON
            )
        )
        return updated

    @staticmethod
    def _check_submittable(order: Order) -> None:
        if order.status == OrderStatus.EXPIRED:
            raise BusinessRuleError(EXPIRED_MESSAGE, reason="order_expired")
        if order.status != OrderStatus.PENDING:
            raise BusinessRuleError(
                NOT_PENDING_MESSAGE.format(status=order.status.value),
                reason="order_not_pending",
                details={"current_status": order.status.value},
            )

    @staticmethod
    def _check_not_terminal(order: Order) -> None:
        if order.status.is_terminal:
            raise BusinessRuleError(
                f"Order is already {order.status.value}; no further status changes are allowed",
                reason="terminal_state",
                details={"current_status": order.status.value},
            )

    async def _stale_submission_error(self, order_id: str) -> Exception:
        fresh = await self._load(order_id)
        if fresh.utr:
            return ConflictError(UTR_ALREADY_SUBMITTED_MESSAGE, reason="utr_already_submitted")
        try:
            self._check_submittable(fresh)
        except BusinessRuleError as e:
            return e
        return ConflictError(
            "Order was modified concurrently; reload and retry",
            reason="concurrent_modification",
        )

    async def _stale_update_error(self, order_id: str) -> Exception:
        fresh = await self._load(order_id)
        try:
            self._check_not_terminal(fresh)
        except BusinessRuleError as e:
            return e
        return ConflictError(
            f"Order status changed to {fresh.status.value}; reload and retry",
            reason="concurrent_modification",
            details={"current_status": fresh.status.value},
        )
