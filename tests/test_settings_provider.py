"""
Tests for settings snapshots and the database-backed provider.
"""
from typing import Any

import pytest

from upi_orders.config import Settings
from upi_orders.core.audit import AuditAction, AuditLogger, AuditTrail, EntityType
from upi_orders.core.errors import ValidationError
from upi_orders.core.lifecycle import OrderLifecycleManager
from upi_orders.core.settings_provider import (
    DatabaseSettingsProvider,
    SettingsSnapshot,
    SettingsUpdate,
)


@pytest.fixture
def provider(
    session_factory: Any, audit_trail: AuditTrail, test_settings: Settings, clock: Any
) -> DatabaseSettingsProvider:
    return DatabaseSettingsProvider(session_factory, audit_trail, defaults=test_settings, clock=clock)


async def settings_entries(audit_logger: AuditLogger) -> list:
    return await audit_logger.entity_history(EntityType.SETTINGS, "system")


class TestDatabaseSettingsProvider:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_defaults_created_on_first_read(self, provider: DatabaseSettingsProvider) -> None:
        snapshot = await provider.get_snapshot()

        assert snapshot.timer_duration_minutes == 9
        assert snapshot.enabled_channels == frozenset({"gpay", "phonepe", "paytm", "bhim"})
        assert snapshot.static_pay_address is None
        assert snapshot.updated_by == "system"
        assert await provider.get_snapshot() == snapshot

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_audits_only_changed_fields(
        self, provider: DatabaseSettingsProvider, audit_logger: AuditLogger
    ) -> None:
        updated = await provider.update(
            {"timer_duration_minutes": 15, "enabled_channels": ["gpay", "phonepe", "paytm", "bhim"]},
            actor_id="admin-1",
        )

        assert updated.timer_duration_minutes == 15
        assert updated.updated_by == "admin-1"

        [entry] = await settings_entries(audit_logger)
        assert entry.action == AuditAction.SETTINGS_UPDATED
        assert entry.actor_id == "admin-1"
        assert set(entry.details.changes) == {"timer_duration_minutes"}
        assert entry.details.changes["timer_duration_minutes"].old == 9
        assert entry.details.changes["timer_duration_minutes"].new == 15

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_noop_update_writes_nothing(
        self, provider: DatabaseSettingsProvider, audit_logger: AuditLogger, clock: Any
    ) -> None:
        before = await provider.get_snapshot()
        clock.advance(minutes=1)

        after = await provider.update({"timer_duration_minutes": 9}, actor_id="admin-1")

        assert after == before
        assert await settings_entries(audit_logger) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_static_pay_address_set_and_cleared(
        self, provider: DatabaseSettingsProvider, audit_logger: AuditLogger
    ) -> None:
        await provider.update({"static_pay_address": "shop@upi"}, actor_id="admin-1")
        assert (await provider.get_snapshot()).static_pay_address == "shop@upi"

        # Omitting the field leaves the override untouched
        await provider.update({"timer_duration_minutes": 5}, actor_id="admin-1")
        assert (await provider.get_snapshot()).static_pay_address == "shop@upi"

        await provider.update({"static_pay_address": None}, actor_id="admin-1")
        assert (await provider.get_snapshot()).static_pay_address is None

        entries = await settings_entries(audit_logger)
        assert entries[-1].details.changes["static_pay_address"].old == "shop@upi"
        assert entries[-1].details.changes["static_pay_address"].new is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes",
        [
            {"timer_duration_minutes": 0},
            {"timer_duration_minutes": 61},
            {"enabled_channels": ["gpay", "venmo"]},
            {"static_pay_address": "no-at-sign"},
            {"unknown_field": 1},
        ],
    )
    async def test_invalid_update_rejected(
        self, provider: DatabaseSettingsProvider, changes: dict
    ) -> None:
        with pytest.raises(ValidationError):
            await provider.update(changes, actor_id="admin-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_channel(
        self, provider: DatabaseSettingsProvider, audit_logger: AuditLogger
    ) -> None:
        snapshot = await provider.set_channel("paytm", False, actor_id="admin-1")

        assert snapshot.enabled_channels == frozenset({"gpay", "phonepe", "bhim"})
        [entry] = await settings_entries(audit_logger)
        assert entry.details.changes["enabled_channels"].new == ["bhim", "gpay", "phonepe"]

        with pytest.raises(ValidationError):
            await provider.set_channel("venmo", True, actor_id="admin-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_lists_settings_changes(self, provider: DatabaseSettingsProvider) -> None:
        await provider.update({"timer_duration_minutes": 10}, actor_id="admin-1")
        await provider.update({"timer_duration_minutes": 11}, actor_id="admin-2")

        history = await provider.history()

        assert history.total == 2
        assert history.entries[0].actor_id == "admin-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_orders_use_snapshot_at_creation(
        self,
        store: Any,
        audit_trail: AuditTrail,
        provider: DatabaseSettingsProvider,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        manager = OrderLifecycleManager(store, audit_trail, provider, clock=clock)
        await provider.update({"timer_duration_minutes": 3}, actor_id="admin-1")

        order = await manager.create_order(sample_order_data, actor_id="merchant-1")
        await provider.update({"timer_duration_minutes": 30}, actor_id="admin-1")

        stored = await store.find_by_id(order.order_id)
        assert (stored.expires_at - stored.created_at).total_seconds() == 180
        assert stored.metadata["timer_duration_minutes"] == 3


class TestSettingsSnapshot:
    @pytest.mark.unit
    def test_from_settings(self, test_settings: Settings) -> None:
        snapshot = SettingsSnapshot.from_settings(test_settings)

        assert snapshot.timer_duration_minutes == 9
        assert snapshot.timer_duration.total_seconds() == 540

    @pytest.mark.unit
    def test_update_tracks_explicit_fields(self) -> None:
        assert SettingsUpdate(timer_duration_minutes=5).requested_values() == {
            "timer_duration_minutes": 5
        }
        assert SettingsUpdate(static_pay_address=None).requested_values() == {
            "static_pay_address": None
        }
