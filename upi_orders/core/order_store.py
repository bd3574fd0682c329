"""
Durable order storage with optimistic concurrency.

``conditional_update`` is the only way to change a stored order. It reads
the current row, applies a mutator to an immutable copy and writes the
result with a single guarded statement:

    UPDATE orders SET ... WHERE order_id = :id
                             AND status = :expected_status
                             AND version = :read_version

If another writer committed in between (a concurrent UTR submission, the
sweeper, an operator) the statement matches no row and the caller gets
StaleStateError. The read and the write use separate short units of work,
so no connection ever holds a read lock while waiting to write.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upi_orders.core.errors import (
    BusinessRuleError,
    ConflictError,
    NotFoundError,
    StaleStateError,
    StoreError,
)
from upi_orders.core.models import (
    Order,
    OrderFilters,
    OrderPage,
    OrderStatus,
    PageRequest,
    is_valid_transition,
    utcnow,
)
from upi_orders.database.models import OrderRecord

logger = structlog.get_logger(__name__)

Mutator = Callable[[Order], Order]

IMMUTABLE_FIELDS = (
    "order_id",
    "amount",
    "merchant_name",
    "pay_address",
    "created_by",
    "created_at",
    "expires_at",
)


def _to_domain(record: OrderRecord) -> Order:
    return Order(
        order_id=record.order_id,
        amount=record.amount,
        merchant_name=record.merchant_name,
        pay_address=record.pay_address,
        status=OrderStatus(record.status),
        utr=record.utr,
        created_by=record.created_by,
        created_at=record.created_at,
        updated_at=record.updated_at,
        expires_at=record.expires_at,
        metadata=dict(record.order_metadata or {}),
        version=record.version,
    )


def _apply_filters(stmt: Any, filters: Optional[OrderFilters], created_by: Optional[str]) -> Any:
    if created_by is not None:
        stmt = stmt.where(OrderRecord.created_by == created_by)
    if filters is None:
        return stmt
    if filters.status is not None:
        stmt = stmt.where(OrderRecord.status == filters.status.value)
    if filters.start_date is not None:
        stmt = stmt.where(OrderRecord.created_at >= filters.start_date)
    if filters.end_date is not None:
        stmt = stmt.where(OrderRecord.created_at <= filters.end_date)
    return stmt


class OrderStore:
    """
    Keyed storage for orders.

    Uniqueness is enforced by the database on ``order_id`` (primary key)
    and ``utr`` (unique, NULLs allowed). Every storage failure is
    translated into the order error taxonomy.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert(self, order: Order) -> Order:
        """
        Persist a new order.

        Raises:
            ConflictError: If the order id already exists
            StoreError: On any other storage failure
        """
        record = OrderRecord(
            order_id=order.order_id,
            amount=order.amount,
            merchant_name=order.merchant_name,
            pay_address=order.pay_address,
            status=order.status.value,
            utr=order.utr,
            created_by=order.created_by,
            order_metadata=dict(order.metadata),
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
            expires_at=order.expires_at,
        )
        async with self.session_factory() as session:
            try:
                session.add(record)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning("order_insert_conflict", order_id=order.order_id)
                raise ConflictError(
                    f"Order {order.order_id} already exists",
                    reason="order_id_collision",
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("order_insert_failed", order_id=order.order_id, error=str(e))
                raise StoreError("Failed to store order") from e
        return order

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        """Load an order by id, or None."""
        stmt = select(OrderRecord).where(OrderRecord.order_id == order_id)
        record = await self._fetch_one(stmt, "find_by_id")
        return _to_domain(record) if record is not None else None

    async def find_by_utr(self, utr: str, exclude_id: Optional[str] = None) -> Optional[Order]:
        """Find the order holding ``utr``, ignoring ``exclude_id``."""
        stmt = select(OrderRecord).where(OrderRecord.utr == utr)
        if exclude_id is not None:
            stmt = stmt.where(OrderRecord.order_id != exclude_id)
        record = await self._fetch_one(stmt.limit(1), "find_by_utr")
        return _to_domain(record) if record is not None else None

    async def conditional_update(
        self,
        order_id: str,
        expected_status: OrderStatus | str,
        mutator: Mutator,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Apply ``mutator`` only if the stored status equals ``expected_status``.

        Args:
            order_id: Order to change
            expected_status: Status the caller based its decision on
            mutator: Returns a modified copy of the current order
            now: Timestamp recorded as ``updated_at``

        Returns:
            Order: The order as written

        Raises:
            NotFoundError: Unknown order id
            StaleStateError: Status or version changed since it was read
            ConflictError: The new UTR is already held by another order
            BusinessRuleError: The mutator attempted an undefined transition
            StoreError: Storage failure
        """
        expected = OrderStatus(expected_status)
        current = await self.find_by_id(order_id)
        if current is None:
            raise NotFoundError("Order not found", details={"order_id": order_id})
        if current.status != expected:
            raise StaleStateError(order_id, expected.value, current.status.value)

        updated = mutator(current)
        self._check_mutation(current, updated)

        now = now or utcnow()
        updated_at = max(now, current.updated_at)
        new_version = current.version + 1
        stmt = (
            update(OrderRecord)
            .where(
                OrderRecord.order_id == order_id,
                OrderRecord.status == expected.value,
                OrderRecord.version == current.version,
            )
            .values(
                {
                    OrderRecord.status: updated.status.value,
                    OrderRecord.utr: updated.utr,
                    OrderRecord.order_metadata: dict(updated.metadata),
                    OrderRecord.updated_at: updated_at,
                    OrderRecord.version: new_version,
                }
            )
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            try:
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    await session.rollback()
                    logger.info(
                        "order_conditional_update_stale",
                        order_id=order_id,
                        expected_status=expected.value,
                        read_version=current.version,
                    )
                    raise StaleStateError(order_id, expected.value)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning("order_utr_unique_violation", order_id=order_id, utr=updated.utr)
                raise ConflictError(
                    "This UTR has already been used for another order",
                    reason="utr_already_used",
                ) from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("order_update_failed", order_id=order_id, error=str(e))
                raise StoreError("Failed to update order") from e

        return updated.model_copy(update={"updated_at": updated_at, "version": new_version})

    async def find_pending_expired_before(
        self, now: datetime, limit: Optional[int] = None
    ) -> List[Order]:
        """Pending orders whose window closed before ``now``, oldest first."""
        stmt = (
            select(OrderRecord)
            .where(
                OrderRecord.status == OrderStatus.PENDING.value,
                OrderRecord.expires_at < now,
            )
            .order_by(OrderRecord.expires_at, OrderRecord.order_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [_to_domain(r) for r in await self._fetch_all(stmt, "find_pending_expired")]

    async def find_expiring_between(self, start: datetime, end: datetime) -> List[Order]:
        """Pending orders expiring in ``(start, end]``."""
        stmt = (
            select(OrderRecord)
            .where(
                OrderRecord.status == OrderStatus.PENDING.value,
                OrderRecord.expires_at > start,
                OrderRecord.expires_at <= end,
            )
            .order_by(OrderRecord.expires_at)
        )
        return [_to_domain(r) for r in await self._fetch_all(stmt, "find_expiring")]

    async def list_by_creator(
        self,
        created_by: str,
        filters: Optional[OrderFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> OrderPage:
        """Orders created by one user, newest first."""
        return await self._list(filters, page or PageRequest(), created_by=created_by)

    async def list_all(
        self,
        filters: Optional[OrderFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> OrderPage:
        """All orders, newest first."""
        return await self._list(filters, page or PageRequest(limit=50))

    async def count(
        self,
        filters: Optional[OrderFilters] = None,
        created_by: Optional[str] = None,
        expires_after: Optional[datetime] = None,
        expires_before: Optional[datetime] = None,
        updated_after: Optional[datetime] = None,
    ) -> int:
        """Count orders matching the filters."""
        stmt = _apply_filters(select(func.count()).select_from(OrderRecord), filters, created_by)
        if expires_after is not None:
            stmt = stmt.where(OrderRecord.expires_at > expires_after)
        if expires_before is not None:
            stmt = stmt.where(OrderRecord.expires_at <= expires_before)
        if updated_after is not None:
            stmt = stmt.where(OrderRecord.updated_at >= updated_after)
        return int(await self._scalar(stmt, "count"))

    async def count_by_status(self, created_by: Optional[str] = None) -> Dict[str, int]:
        """Order counts keyed by status."""
        stmt = _apply_filters(
            select(OrderRecord.status, func.count()).group_by(OrderRecord.status),
            None,
            created_by,
        )
        async with self.session_factory() as session:
            try:
                rows = (await session.execute(stmt)).all()
            except SQLAlchemyError as e:
                logger.error("order_query_failed", operation="count_by_status", error=str(e))
                raise StoreError("Failed to query orders") from e
        return {status: int(count) for status, count in rows}

    async def _list(
        self,
        filters: Optional[OrderFilters],
        page: PageRequest,
        created_by: Optional[str] = None,
    ) -> OrderPage:
        stmt = (
            _apply_filters(select(OrderRecord), filters, created_by)
            .order_by(OrderRecord.created_at.desc(), OrderRecord.order_id.desc())
            .offset(page.offset)
            .limit(page.limit)
        )
        records = await self._fetch_all(stmt, "list")
        total = await self.count(filters, created_by=created_by)
        return OrderPage(
            orders=[_to_domain(r) for r in records],
            total=total,
            page=page.page,
            limit=page.limit,
        )

    @staticmethod
    def _check_mutation(current: Order, updated: Order) -> None:
        for field in IMMUTABLE_FIELDS:
            if getattr(current, field) != getattr(updated, field):
                raise ValueError(f"Order field '{field}' is immutable")
        if updated.status != current.status and not is_valid_transition(
            current.status, updated.status
        ):
            raise BusinessRuleError(
                f"Cannot change order status from {current.status.value} "
                f"to {updated.status.value}",
                reason="invalid_transition",
            )

    async def _fetch_one(self, stmt: Any, operation: str) -> Optional[OrderRecord]:
        async with self.session_factory() as session:
            try:
                return (await session.execute(stmt)).scalar_one_or_none()
            except SQLAlchemyError as e:
                logger.error("order_query_failed", operation=operation, error=str(e))
                raise StoreError("Failed to query orders") from e

    async def _fetch_all(self, stmt: Any, operation: str) -> List[OrderRecord]:
        async with self.session_factory() as session:
            try:
                return list((await session.execute(stmt)).scalars().all())
            except SQLAlchemyError as e:
                logger.error("order_query_failed", operation=operation, error=str(e))
                raise StoreError("Failed to query orders") from e

    async def _scalar(self, stmt: Any, operation: str) -> Any:
        async with self.session_factory() as session:
            try:
                return (await session.execute(stmt)).scalar_one()
            except SQLAlchemyError as e:
                logger.error("order_query_failed", operation=operation, error=str(e))
                raise StoreError("Failed to query orders") from e
