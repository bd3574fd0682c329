"""
Append-only audit trail.

Two pieces:

- ``AuditLogger`` persists and queries immutable ``AuditEntry`` records.
  There is no update API; the only delete is the age-based retention purge.
- ``AuditTrail`` is the best-effort emitter used by the lifecycle. It is
  called after a state mutation has committed. A failed write is logged,
  counted and queued for ``retry_pending``; it never propagates to the
  operation that triggered it.

Each action carries its own typed details payload, discriminated by
``kind`` (which always equals the action value).
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Deque, Dict, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upi_orders.core.errors import AuditWriteError, StoreError
from upi_orders.core.models import PageRequest, utcnow
from upi_orders.database.models import AuditLogRecord
from upi_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class AuditAction(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_STATUS_UPDATED = "order_status_updated"
    UTR_SUBMITTED = "utr_submitted"
    SETTINGS_UPDATED = "settings_updated"


class EntityType(str, Enum):
    ORDER = "order"
    SETTINGS = "settings"


class OrderCreatedDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["order_created"] = "order_created"
    amount: Decimal
    merchant_name: str
    pay_address: str
    expires_at: datetime
    timer_duration_minutes: int


class UtrSubmittedDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["utr_submitted"] = "utr_submitted"
    utr: str
    previous_status: str


class StatusChangedDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["order_status_updated"] = "order_status_updated"
    old_status: str
    new_status: str
    reason: Optional[str] = None
    removed_utr: Optional[str] = None


class FieldChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    old: Any = None
    new: Any = None


class SettingsUpdatedDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["settings_updated"] = "settings_updated"
    changes: Dict[str, FieldChange]


AuditDetails = Annotated[
    Union[
        OrderCreatedDetails,
        UtrSubmittedDetails,
        StatusChangedDetails,
        SettingsUpdatedDetails,
    ],
    Field(discriminator="kind"),
]


class AuditEntry(BaseModel):
    """An immutable record of one state-affecting action."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    action: AuditAction
    entity_type: EntityType
    entity_id: Optional[str] = None
    actor_id: str = Field(..., min_length=1)
    details: AuditDetails
    timestamp: datetime = Field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @model_validator(mode="after")
    def details_match_action(self) -> "AuditEntry":
        if self.details.kind != self.action.value:
            raise ValueError(
                f"Details of kind '{self.details.kind}' cannot describe action "
                f"'{self.action.value}'"
            )
        return self


class AuditFilters(BaseModel):
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AuditPage(BaseModel):
    entries: List[AuditEntry]
    total: int
    page: int
    limit: int


class ActionCount(BaseModel):
    action: AuditAction
    count: int
    last_occurrence: datetime


class ActorActivity(BaseModel):
    actor_id: str
    total_actions: int
    action_breakdown: Dict[str, int]
    last_activity: datetime


def _to_entry(record: AuditLogRecord) -> AuditEntry:
    return AuditEntry(
        id=record.id,
        action=AuditAction(record.action),
        entity_type=EntityType(record.entity_type),
        entity_id=record.entity_id,
        actor_id=record.actor_id,
        details=record.details,
        timestamp=record.timestamp,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
    )


def _time_range(stmt: Any, start: Optional[datetime], end: Optional[datetime]) -> Any:
    if start is not None:
        stmt = stmt.where(AuditLogRecord.timestamp >= start)
    if end is not None:
        stmt = stmt.where(AuditLogRecord.timestamp <= end)
    return stmt


class AuditLogger:
    """Durable append-only store for audit entries."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Persist an audit entry.

        Args:
            entry: Entry to append; an ``id`` is assigned on write

        Returns:
            AuditEntry: The stored entry

        Raises:
            AuditWriteError: If the entry could not be written
        """
        record = AuditLogRecord(
            action=entry.action.value,
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            actor_id=entry.actor_id,
            details=entry.details.model_dump(mode="json"),
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=entry.timestamp,
        )
        async with self.session_factory() as session:
            try:
                session.add(record)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise AuditWriteError(
                    f"Failed to append audit entry: {e}",
                    details={"action": entry.action.value, "entity_id": entry.entity_id},
                ) from e

        metrics.record_audit_written(entry.action.value)
        return entry.model_copy(update={"id": record.id})

    async def query(
        self,
        filters: Optional[AuditFilters] = None,
        page: Optional[PageRequest] = None,
    ) -> AuditPage:
        """Filtered entries, newest first."""
        filters = filters or AuditFilters()
        page = page or PageRequest(limit=50)

        conditions = []
        if filters.actor_id:
            conditions.append(AuditLogRecord.actor_id == filters.actor_id)
        if filters.action:
            conditions.append(AuditLogRecord.action == filters.action.value)
        if filters.entity_type:
            conditions.append(AuditLogRecord.entity_type == filters.entity_type.value)
        if filters.entity_id:
            conditions.append(AuditLogRecord.entity_id == filters.entity_id)

        stmt = _time_range(
            select(AuditLogRecord).where(*conditions), filters.start_date, filters.end_date
        )
        count_stmt = _time_range(
            select(func.count()).select_from(AuditLogRecord).where(*conditions),
            filters.start_date,
            filters.end_date,
        )
        stmt = (
            stmt.order_by(AuditLogRecord.timestamp.desc(), AuditLogRecord.id.desc())
            .offset(page.offset)
            .limit(page.limit)
        )

        async with self.session_factory() as session:
            try:
                records = (await session.execute(stmt)).scalars().all()
                total = (await session.execute(count_stmt)).scalar_one()
            except SQLAlchemyError as e:
                logger.error("audit_query_failed", error=str(e))
                raise StoreError("Failed to query audit log") from e

        return AuditPage(
            entries=[_to_entry(r) for r in records],
            total=int(total),
            page=page.page,
            limit=page.limit,
        )

    async def entity_history(self, entity_type: EntityType, entity_id: str) -> List[AuditEntry]:
        """Every entry for one entity, oldest first."""
        stmt = (
            select(AuditLogRecord)
            .where(
                AuditLogRecord.entity_type == EntityType(entity_type).value,
                AuditLogRecord.entity_id == entity_id,
            )
            .order_by(AuditLogRecord.timestamp, AuditLogRecord.id)
        )
        async with self.session_factory() as session:
            try:
                records = (await session.execute(stmt)).scalars().all()
            except SQLAlchemyError as e:
                logger.error("audit_query_failed", error=str(e), entity_id=entity_id)
                raise StoreError("Failed to query audit log") from e
        return [_to_entry(r) for r in records]

    async def aggregate_counts(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ActionCount]:
        """Entry counts per action within a date range, most frequent first."""
        stmt = _time_range(
            select(
                AuditLogRecord.action,
                func.count(AuditLogRecord.id),
                func.max(AuditLogRecord.timestamp),
            ),
            start,
            end,
        ).group_by(AuditLogRecord.action)

        async with self.session_factory() as session:
            try:
                rows = (await session.execute(stmt)).all()
            except SQLAlchemyError as e:
                logger.error("audit_aggregate_failed", error=str(e))
                raise StoreError("Failed to aggregate audit log") from e

        counts = [
            ActionCount(action=AuditAction(action), count=int(count), last_occurrence=last)
            for action, count, last in rows
        ]
        return sorted(counts, key=lambda c: (-c.count, c.action.value))

    async def actor_stats(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[ActorActivity]:
        """Per-actor activity summary, most active first."""
        stmt = _time_range(
            select(
                AuditLogRecord.actor_id,
                AuditLogRecord.action,
                func.count(AuditLogRecord.id),
                func.max(AuditLogRecord.timestamp),
            ),
            start,
            end,
        ).group_by(AuditLogRecord.actor_id, AuditLogRecord.action)

        async with self.session_factory() as session:
            try:
                rows = (await session.execute(stmt)).all()
            except SQLAlchemyError as e:
                logger.error("audit_aggregate_failed", error=str(e))
                raise StoreError("Failed to aggregate audit log") from e

        by_actor: Dict[str, Dict[str, Any]] = {}
        for actor_id, action, count, last in rows:
            summary = by_actor.setdefault(
                actor_id, {"total": 0, "breakdown": {}, "last": last}
            )
            summary["total"] += int(count)
            summary["breakdown"][action] = int(count)
            summary["last"] = max(summary["last"], last)

        activity = [
            ActorActivity(
                actor_id=actor_id,
                total_actions=s["total"],
                action_breakdown=s["breakdown"],
                last_activity=s["last"],
            )
            for actor_id, s in by_actor.items()
        ]
        activity.sort(key=lambda a: (-a.total_actions, a.actor_id))
        return activity[:limit]

    async def purge_older_than(self, cutoff: datetime) -> int:
        """
        Retention purge: delete entries with ``timestamp < cutoff``.

        Age is the only criterion; entries are never removed for any other
        reason.
        """
        stmt = delete(AuditLogRecord).where(AuditLogRecord.timestamp < cutoff)
        async with self.session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("audit_purge_failed", error=str(e))
                raise StoreError("Failed to purge audit log") from e

        deleted = result.rowcount or 0
        logger.info("audit_entries_purged", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted


@dataclass
class PendingEntry:
    entry: AuditEntry
    attempts: int = 1


class AuditTrail:
    """
    Best-effort audit emission with an in-process retry queue.

    The state mutation is the source of truth: ``emit`` never raises, and
    entries that cannot be written are retried by ``retry_pending`` until
    ``max_attempts`` is reached. The queue lives in the process that emitted
    the entries, so each process must drain its own queue (see
    ``run_retry_loop``). At most ``max_queue`` entries are held; the oldest
    is dropped when a new one arrives on a full queue.
    """

    def __init__(self, audit_logger: AuditLogger, max_attempts: int = 5, max_queue: int = 1000):
        self.audit_logger = audit_logger
        self.max_attempts = max_attempts
        self.max_queue = max_queue
        self._pending: Deque[PendingEntry] = deque()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def emit(self, entry: AuditEntry) -> bool:
        """
        Append ``entry``; on failure queue it for retry.

        Returns:
            bool: True if the entry was written now
        """
        try:
            await self.audit_logger.append(entry)
            return True
        except Exception as e:
            logger.warning(
                "audit_write_failed",
                action=entry.action.value,
                entity_id=entry.entity_id,
                error=str(e),
                entry=entry.model_dump(mode="json"),
            )
            metrics.record_audit_failure(entry.action.value)
            self._enqueue(PendingEntry(entry=entry))
            return False

    async def retry_pending(self) -> int:
        """
        Re-append queued entries once each.

        Returns:
            int: Number of entries written
        """
        written = 0
        for _ in range(len(self._pending)):
            pending = self._pending.popleft()
            try:
                await self.audit_logger.append(pending.entry)
                written += 1
            except Exception as e:
                pending.attempts += 1
                if pending.attempts >= self.max_attempts:
                    self._drop(pending, reason="max_attempts", error=str(e))
                else:
                    self._pending.append(pending)

        metrics.set_audit_retry_queue_depth(len(self._pending))
        if written:
            logger.info("audit_entries_retried", written=written, remaining=len(self._pending))
        return written

    async def run_retry_loop(self, interval_seconds: float) -> None:
        """Drain the retry queue every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            if not self._pending:
                continue
            try:
                await self.retry_pending()
            except Exception as e:
                logger.error("audit_retry_loop_error", error=str(e), exc_info=True)

    def _enqueue(self, pending: PendingEntry) -> None:
        if pending.attempts >= self.max_attempts:
            self._drop(pending, reason="max_attempts")
            return
        while len(self._pending) >= self.max_queue:
            self._drop(self._pending.popleft(), reason="queue_full")
        self._pending.append(pending)
        metrics.set_audit_retry_queue_depth(len(self._pending))

    @staticmethod
    def _drop(pending: PendingEntry, reason: str, error: Optional[str] = None) -> None:
        logger.error(
            "audit_entry_dropped",
            action=pending.entry.action.value,
            entity_id=pending.entry.entity_id,
            attempts=pending.attempts,
            reason=reason,
            error=error,
            entry=pending.entry.model_dump(mode="json"),
        )
        metrics.record_audit_dropped(pending.entry.action.value)
