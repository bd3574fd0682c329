"""
Tests for one expiration worker cycle.
"""
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from upi_orders.api.dependencies import ServiceContainer
from upi_orders.core.audit import AuditAction, AuditEntry, EntityType, StatusChangedDetails
from upi_orders.core.errors import AuditWriteError
from upi_orders.workers.expiration_worker import run_cycle


class TestExpirationCycle:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cycle_sweeps_and_retries_audit(
        self, container: ServiceContainer, clock: Any, sample_order_data: dict
    ) -> None:
        with patch.object(
            container.audit_logger, "append", AsyncMock(side_effect=AuditWriteError("down"))
        ):
            order = await container.lifecycle.create_order(sample_order_data, actor_id="m")
        assert container.audit_trail.pending_count == 1

        clock.advance(minutes=10)
        summary = await run_cycle(container)

        assert summary["expired_count"] == 1
        assert summary["audit_retried"] == 1
        assert summary["audit_pending"] == 0
        stored = await container.store.find_by_id(order.order_id)
        assert stored.status.value == "expired"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cycle_purges_old_audit_entries(
        self, container: ServiceContainer, clock: Any
    ) -> None:
        await container.audit_logger.append(
            AuditEntry(
                action=AuditAction.ORDER_STATUS_UPDATED,
                entity_type=EntityType.ORDER,
                entity_id="UPI1",
                actor_id="system",
                details=StatusChangedDetails(old_status="pending", new_status="expired"),
                timestamp=clock.now - timedelta(days=400),
            )
        )

        skipped = await run_cycle(container, purge=False)
        purged = await run_cycle(container, purge=True)

        assert skipped["audit_purged"] == 0
        assert purged["audit_purged"] == 1
