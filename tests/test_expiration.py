"""
Tests for the expiration sweeper.
"""
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from upi_orders.core.audit import AuditAction, AuditLogger, EntityType
from upi_orders.core.errors import StaleStateError
from upi_orders.core.expiration import ExpirationSweeper
from upi_orders.core.lifecycle import OrderLifecycleManager
from upi_orders.core.models import OrderStatus
from upi_orders.core.order_store import OrderStore
from upi_orders.core.settings_provider import SettingsSnapshot, StaticSettingsProvider


@pytest.fixture
def one_minute_lifecycle(
    store: OrderStore, audit_trail: Any, clock: Any
) -> OrderLifecycleManager:
    provider = StaticSettingsProvider(SettingsSnapshot(timer_duration_minutes=1))
    return OrderLifecycleManager(store, audit_trail, provider, clock=clock)


class TestSweep:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expires_overdue_order(
        self,
        one_minute_lifecycle: OrderLifecycleManager,
        sweeper: ExpirationSweeper,
        audit_logger: AuditLogger,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        order = await one_minute_lifecycle.create_order(sample_order_data, actor_id="merchant-1")
        clock.advance(seconds=61)

        result = await sweeper.sweep()

        assert result.expired_count == 1
        assert result.expired_ids == [order.order_id]
        assert result.failures == []

        stored = await sweeper.store.find_by_id(order.order_id)
        assert stored.status == OrderStatus.EXPIRED
        assert stored.metadata["expired_by"] == "system"

        entries = await audit_logger.entity_history(EntityType.ORDER, order.order_id)
        status_updates = [e for e in entries if e.action == AuditAction.ORDER_STATUS_UPDATED]
        assert len(status_updates) == 1
        assert status_updates[0].actor_id == "system"
        assert status_updates[0].details.old_status == "pending"
        assert status_updates[0].details.new_status == "expired"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(
        self,
        one_minute_lifecycle: OrderLifecycleManager,
        sweeper: ExpirationSweeper,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        await one_minute_lifecycle.create_order(sample_order_data, actor_id="merchant-1")
        await one_minute_lifecycle.create_order(sample_order_data, actor_id="merchant-1")
        clock.advance(minutes=2)

        first = await sweeper.sweep()
        second = await sweeper.sweep()

        assert first.expired_count == 2
        assert second.expired_count == 0
        assert second.failures == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_leaves_open_and_submitted_orders_alone(
        self,
        lifecycle: OrderLifecycleManager,
        one_minute_lifecycle: OrderLifecycleManager,
        sweeper: ExpirationSweeper,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        submitted = await one_minute_lifecycle.create_order(sample_order_data, actor_id="m")
        await one_minute_lifecycle.submit_utr(submitted.order_id, "ABCD12345678")
        still_open = await lifecycle.create_order(sample_order_data, actor_id="m")
        clock.advance(minutes=5)

        result = await sweeper.sweep()

        assert result.expired_count == 0
        assert (await sweeper.store.find_by_id(submitted.order_id)).status == (
            OrderStatus.PENDING_VERIFICATION
        )
        assert (await sweeper.store.find_by_id(still_open.order_id)).status == (
            OrderStatus.PENDING
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lost_race_is_collected_not_raised(
        self,
        one_minute_lifecycle: OrderLifecycleManager,
        sweeper: ExpirationSweeper,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        contested = await one_minute_lifecycle.create_order(sample_order_data, actor_id="m")
        other = await one_minute_lifecycle.create_order(sample_order_data, actor_id="m")
        clock.advance(minutes=2)

        real_update = sweeper.store.conditional_update

        async def flaky_update(order_id: str, *args: Any, **kwargs: Any) -> Any:
            if order_id == contested.order_id:
                raise StaleStateError(order_id, "pending", "pending-verification")
            return await real_update(order_id, *args, **kwargs)

        with patch.object(sweeper.store, "conditional_update", AsyncMock(side_effect=flaky_update)):
            result = await sweeper.sweep()

        assert result.expired_ids == [other.order_id]
        assert len(result.failures) == 1
        assert result.failures[0].order_id == contested.order_id
        assert result.failures[0].reason == "stale_state"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_limits_sweep(
        self,
        store: OrderStore,
        audit_trail: Any,
        one_minute_lifecycle: OrderLifecycleManager,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        for _ in range(3):
            await one_minute_lifecycle.create_order(sample_order_data, actor_id="m")
        clock.advance(minutes=2)
        limited = ExpirationSweeper(store, audit_trail, clock=clock, batch_size=2)

        assert (await limited.sweep()).expired_count == 2
        assert (await limited.sweep()).expired_count == 1


class TestExpirationQueries:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expiring_soon_and_stats(
        self,
        lifecycle: OrderLifecycleManager,
        one_minute_lifecycle: OrderLifecycleManager,
        sweeper: ExpirationSweeper,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        nine_minute = await lifecycle.create_order(sample_order_data, actor_id="m")
        await one_minute_lifecycle.create_order(sample_order_data, actor_id="m")
        clock.advance(minutes=5)

        expiring = await sweeper.expiring_soon(within_minutes=5)
        assert [o.order_id for o in expiring] == [nine_minute.order_id]
        assert expiring[0].minutes_remaining == 4

        await sweeper.sweep()
        stats = await sweeper.stats()
        assert stats.total_pending == 1
        assert stats.total_expired == 1
        assert stats.expired_today == 1
        assert stats.expiring_soon == 1
