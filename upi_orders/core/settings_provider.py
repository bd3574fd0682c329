"""
Operator-managed settings consumed at order-creation time.

The lifecycle never reads a live settings object. It asks a
``SettingsProvider`` for a frozen ``SettingsSnapshot`` and copies the
values it used into the order's metadata.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upi_orders.config import KNOWN_CHANNELS, VPA_PATTERN, Settings, get_settings
from upi_orders.core.audit import (
    AuditAction,
    AuditEntry,
    AuditFilters,
    AuditPage,
    AuditTrail,
    EntityType,
    FieldChange,
    SettingsUpdatedDetails,
)
from upi_orders.core.errors import StoreError, ValidationError
from upi_orders.core.models import ClientContext, PageRequest, format_validation_error, utcnow
from upi_orders.database.models import SystemSettingsRecord

logger = structlog.get_logger(__name__)

SETTINGS_ROW_ID = 1
SETTINGS_ENTITY_ID = "system"


class SettingsSnapshot(BaseModel):
    """Immutable settings value."""

    model_config = ConfigDict(frozen=True)

    timer_duration_minutes: int = Field(default=9, ge=1, le=60)
    enabled_channels: FrozenSet[str] = frozenset(KNOWN_CHANNELS)
    static_pay_address: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    @property
    def timer_duration(self) -> timedelta:
        return timedelta(minutes=self.timer_duration_minutes)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SettingsSnapshot":
        return cls(
            timer_duration_minutes=settings.default_timer_duration_minutes,
            enabled_channels=settings.get_enabled_channels(),
            static_pay_address=settings.static_pay_address,
        )


class SettingsUpdate(BaseModel):
    """
    Partial settings change.

    Only fields explicitly set are applied, so ``static_pay_address=None``
    clears the override while omitting it leaves the override untouched.
    """

    model_config = ConfigDict(extra="forbid")

    timer_duration_minutes: Optional[int] = Field(default=None, ge=1, le=60)
    enabled_channels: Optional[List[str]] = None
    static_pay_address: Optional[str] = None

    @field_validator("enabled_channels")
    @classmethod
    def validate_channels(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        channels = sorted({c.strip().lower() for c in v if c and c.strip()})
        unknown = sorted(set(channels) - set(KNOWN_CHANNELS))
        if unknown:
            raise ValueError(f"Unknown payment channels: {unknown}")
        return channels

    @field_validator("static_pay_address")
    @classmethod
    def validate_static_pay_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not VPA_PATTERN.match(v):
            raise ValueError("Invalid UPI ID format")
        return v

    @classmethod
    def parse(cls, data: Any) -> "SettingsUpdate":
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(format_validation_error(e), reason="invalid_settings")

    def requested_values(self) -> Dict[str, Any]:
        """Explicitly supplied fields, normalised for comparison."""
        values: Dict[str, Any] = {}
        for field in self.model_fields_set:
            value = getattr(self, field)
            if field == "timer_duration_minutes" and value is None:
                continue
            if field == "enabled_channels":
                if value is None:
                    continue
                value = frozenset(value)
            values[field] = value
        return values


class SettingsProvider(Protocol):
    async def get_snapshot(self) -> SettingsSnapshot:
        ...


class StaticSettingsProvider:
    """Fixed snapshot; used for environment-only deployments and tests."""

    def __init__(self, snapshot: Optional[SettingsSnapshot] = None):
        self.snapshot = snapshot or SettingsSnapshot.from_settings(get_settings())

    async def get_snapshot(self) -> SettingsSnapshot:
        return self.snapshot


def _to_snapshot(record: SystemSettingsRecord) -> SettingsSnapshot:
    return SettingsSnapshot(
        timer_duration_minutes=record.timer_duration_minutes,
        enabled_channels=frozenset(record.enabled_channels or ()),
        static_pay_address=record.static_pay_address,
        updated_at=record.updated_at,
        updated_by=record.updated_by,
    )


def _audit_value(value: Any) -> Any:
    if isinstance(value, frozenset):
        return sorted(value)
    return value


class DatabaseSettingsProvider:
    """
    Settings persisted as a singleton ``system_settings`` row.

    The row is created from configuration defaults on first read. Updates
    are audited with only the fields whose values actually changed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_trail: AuditTrail,
        defaults: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.audit_trail = audit_trail
        self.defaults = defaults or get_settings()
        self.clock = clock

    async def get_snapshot(self) -> SettingsSnapshot:
        async with self.session_factory() as session:
            try:
                record = await self._load_or_create(session)
                return _to_snapshot(record)
            except SQLAlchemyError as e:
                logger.error("settings_read_failed", error=str(e))
                raise StoreError("Failed to read settings") from e

    async def update(
        self,
        changes: SettingsUpdate | Dict[str, Any],
        actor_id: str,
        client: Optional[ClientContext] = None,
    ) -> SettingsSnapshot:
        """
        Apply a partial update.

        Returns:
            SettingsSnapshot: Settings after the update; unchanged (and
            unwritten) when every requested value equals the current one
        """
        changes = SettingsUpdate.parse(changes)
        requested = changes.requested_values()
        now = self.clock()

        async with self.session_factory() as session:
            try:
                record = await self._load_or_create(session)
                current = _to_snapshot(record)
                diff = {
                    field: FieldChange(
                        old=_audit_value(getattr(current, field)),
                        new=_audit_value(value),
                    )
                    for field, value in requested.items()
                    if getattr(current, field) != value
                }
                if not diff:
                    logger.debug("settings_update_noop", actor_id=actor_id)
                    return current

                for field, value in requested.items():
                    if field == "enabled_channels":
                        value = sorted(value)
                    setattr(record, field, value)
                record.updated_by = actor_id
                record.updated_at = now
                await session.commit()
                updated = _to_snapshot(record)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("settings_update_failed", actor_id=actor_id, error=str(e))
                raise StoreError("Failed to update settings") from e

        logger.info("settings_updated", actor_id=actor_id, fields=sorted(diff))
        await self.audit_trail.emit(
            AuditEntry(
                action=AuditAction.SETTINGS_UPDATED,
                entity_type=EntityType.SETTINGS,
                entity_id=SETTINGS_ENTITY_ID,
                actor_id=actor_id,
                details=SettingsUpdatedDetails(changes=diff),
                timestamp=now,
                ip_address=client.ip_address if client else None,
                user_agent=client.user_agent if client else None,
            )
        )
        return updated

    async def set_channel(
        self,
        channel: str,
        enabled: bool,
        actor_id: str,
        client: Optional[ClientContext] = None,
    ) -> SettingsSnapshot:
        """Enable or disable a single payment channel."""
        channel = channel.strip().lower()
        if channel not in KNOWN_CHANNELS:
            raise ValidationError(
                f"Unknown payment channel: {channel}",
                reason="invalid_settings",
                details={"allowed": list(KNOWN_CHANNELS)},
            )
        current = await self.get_snapshot()
        channels = set(current.enabled_channels)
        if enabled:
            channels.add(channel)
        else:
            channels.discard(channel)
        return await self.update(
            SettingsUpdate(enabled_channels=sorted(channels)), actor_id, client=client
        )

    async def history(self, page: Optional[PageRequest] = None) -> AuditPage:
        """Settings changes, newest first."""
        return await self.audit_trail.audit_logger.query(
            AuditFilters(entity_type=EntityType.SETTINGS), page
        )

    async def _load_or_create(self, session: AsyncSession) -> SystemSettingsRecord:
        stmt = select(SystemSettingsRecord).where(SystemSettingsRecord.id == SETTINGS_ROW_ID)
        record = (await session.execute(stmt)).scalar_one_or_none()
        if record is not None:
            return record

        defaults = SettingsSnapshot.from_settings(self.defaults)
        now = self.clock()
        record = SystemSettingsRecord(
            id=SETTINGS_ROW_ID,
            timer_duration_minutes=defaults.timer_duration_minutes,
            enabled_channels=sorted(defaults.enabled_channels),
            static_pay_address=defaults.static_pay_address,
            updated_by="system",
            updated_at=now,
            created_at=now,
        )
        session.add(record)
        try:
            await session.commit()
        except IntegrityError:
            # Another reader created the row first
            await session.rollback()
            record = (await session.execute(stmt)).scalar_one()
        else:
            logger.info("settings_initialized", timer_duration_minutes=record.timer_duration_minutes)
        return record
