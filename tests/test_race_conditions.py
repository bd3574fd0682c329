"""
Race condition tests for concurrent order mutations.

Concurrent writers hit the same SQLite file through separate connections;
the conditional update must let exactly one of them win.
"""
import asyncio
from typing import Any

import pytest

from upi_orders.core.audit import AuditAction, AuditLogger, EntityType
from upi_orders.core.errors import BusinessRuleError, ConflictError
from upi_orders.core.expiration import ExpirationSweeper
from upi_orders.core.lifecycle import OrderLifecycleManager
from upi_orders.core.models import OrderStatus


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_submissions_same_order(
        self,
        lifecycle: OrderLifecycleManager,
        audit_logger: AuditLogger,
        sample_order_data: dict,
    ) -> None:
        """Two distinct UTRs for one order: one wins, the other gets a typed rejection."""
        order = await lifecycle.create_order(sample_order_data, actor_id="merchant-1")

        results = await asyncio.gather(
            lifecycle.submit_utr(order.order_id, "AAAA11111111"),
            lifecycle.submit_utr(order.order_id, "BBBB22222222"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], (ConflictError, BusinessRuleError))

        stored = await lifecycle.store.find_by_id(order.order_id)
        assert stored.utr == successes[0].utr
        assert stored.status == OrderStatus.PENDING_VERIFICATION

        entries = await audit_logger.entity_history(EntityType.ORDER, order.order_id)
        assert [e.action for e in entries].count(AuditAction.UTR_SUBMITTED) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_same_utr_on_two_orders(
        self, lifecycle: OrderLifecycleManager, sample_order_data: dict
    ) -> None:
        """One UTR submitted to two orders at once is accepted for exactly one."""
        first = await lifecycle.create_order(sample_order_data, actor_id="merchant-1")
        second = await lifecycle.create_order(sample_order_data, actor_id="merchant-1")

        results = await asyncio.gather(
            lifecycle.submit_utr(first.order_id, "ABCD12345678"),
            lifecycle.submit_utr(second.order_id, "ABCD12345678"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)
        assert failures[0].reason == "utr_already_used"

        holders = [
            o
            for o in [
                await lifecycle.store.find_by_id(first.order_id),
                await lifecycle.store.find_by_id(second.order_id),
            ]
            if o.utr == "ABCD12345678"
        ]
        assert len(holders) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_many_concurrent_submissions(
        self, lifecycle: OrderLifecycleManager, sample_order_data: dict
    ) -> None:
        order = await lifecycle.create_order(sample_order_data, actor_id="merchant-1")

        results = await asyncio.gather(
            *[lifecycle.submit_utr(order.order_id, f"UTR{i:09d}") for i in range(8)],
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(
            isinstance(r, (ConflictError, BusinessRuleError))
            for r in results
            if isinstance(r, Exception)
        )

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_sweep_racing_submission(
        self,
        lifecycle: OrderLifecycleManager,
        sweeper: ExpirationSweeper,
        clock: Any,
        sample_order_data: dict,
    ) -> None:
        """Sweeper and a late submission: whichever commits first decides the outcome."""
        order = await lifecycle.create_order(sample_order_data, actor_id="merchant-1")
        clock.advance(minutes=9, seconds=30)

        sweep_result, submit_result = await asyncio.gather(
            sweeper.sweep(),
            lifecycle.submit_utr(order.order_id, "ABCD12345678"),
            return_exceptions=True,
        )

        # The window has closed, so the submission can never succeed
        assert isinstance(submit_result, BusinessRuleError)
        assert submit_result.reason == "order_expired"
        assert not isinstance(sweep_result, Exception)

        stored = await lifecycle.store.find_by_id(order.order_id)
        assert stored.status == OrderStatus.EXPIRED
        assert stored.utr is None

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_decisions(
        self, lifecycle: OrderLifecycleManager, sample_order_data: dict
    ) -> None:
        order = await lifecycle.create_order(sample_order_data, actor_id="merchant-1")
        await lifecycle.submit_utr(order.order_id, "ABCD12345678")

        results = await asyncio.gather(
            lifecycle.decide(order.order_id, "completed", "admin-1"),
            lifecycle.decide(order.order_id, "failed", "admin-2"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert isinstance(failures[0], BusinessRuleError)
        assert failures[0].reason == "terminal_state"

        stored = await lifecycle.store.find_by_id(order.order_id)
        assert stored.status == successes[0].status
