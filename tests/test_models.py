"""
Tests for domain types and the state table.
"""
import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from upi_orders.core.errors import ValidationError
from upi_orders.core.models import (
    TERMINAL_STATUSES,
    CreateOrderRequest,
    Order,
    OrderStatus,
    generate_order_id,
    is_valid_transition,
    validate_utr,
)

NOW = datetime(2024, 1, 15, 10, 0, 0)


class TestStateTable:
    @pytest.mark.unit
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_have_no_exits(self, terminal: OrderStatus) -> None:
        assert terminal.is_terminal
        assert not any(is_valid_transition(terminal, target) for target in OrderStatus)

    @pytest.mark.unit
    def test_defined_edges(self) -> None:
        assert is_valid_transition(OrderStatus.PENDING, OrderStatus.PENDING_VERIFICATION)
        assert is_valid_transition(OrderStatus.PENDING, OrderStatus.EXPIRED)
        assert is_valid_transition(OrderStatus.PENDING_VERIFICATION, OrderStatus.PENDING)
        assert not is_valid_transition(OrderStatus.PENDING, OrderStatus.COMPLETED)

    @pytest.mark.unit
    def test_parse_unknown_status(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            OrderStatus.parse("refunded")

        assert exc_info.value.reason == "invalid_status"


class TestOrderHelpers:
    @pytest.mark.unit
    def test_generate_order_id_format(self) -> None:
        order_id = generate_order_id(NOW)

        assert re.fullmatch(r"UPI1705312800000[A-Z0-9]{5}", order_id)

    @pytest.mark.unit
    def test_validate_utr(self) -> None:
        assert validate_utr("abcd12345678") == "abcd12345678"
        with pytest.raises(ValidationError):
            validate_utr("ABCD-1234567")
        with pytest.raises(ValidationError):
            validate_utr(None)

    @pytest.mark.unit
    def test_expiry_checks(self) -> None:
        order = Order(
            order_id="UPI1",
            amount=Decimal("10.00"),
            merchant_name="Acme",
            pay_address="acme@bank",
            created_by="m",
            created_at=NOW,
            updated_at=NOW,
            expires_at=NOW + timedelta(minutes=9),
        )

        assert order.can_submit_utr(NOW + timedelta(minutes=9))
        assert not order.can_submit_utr(NOW + timedelta(minutes=9, seconds=1))
        assert order.needs_expiry(NOW + timedelta(minutes=10))
        assert not order.can_update_status()

    @pytest.mark.unit
    def test_with_changes_merges_metadata(self) -> None:
        order = Order(
            order_id="UPI1",
            amount=Decimal("10.00"),
            merchant_name="Acme",
            pay_address="acme@bank",
            created_by="m",
            created_at=NOW,
            updated_at=NOW,
            expires_at=NOW,
            metadata={"customer_ip": "10.0.0.1"},
        )

        changed = order.with_changes(metadata={"expired_by": "system"})

        assert changed.metadata == {"customer_ip": "10.0.0.1", "expired_by": "system"}
        assert order.metadata == {"customer_ip": "10.0.0.1"}


class TestCreateOrderRequest:
    @pytest.mark.unit
    def test_normalises_input(self) -> None:
        request = CreateOrderRequest.parse(
            {"amount": "99.999", "merchant_name": "  Acme  ", "pay_address": " acme@bank "}
        )

        assert request.amount == Decimal("100.00")
        assert request.merchant_name == "Acme"
        assert request.pay_address == "acme@bank"

    @pytest.mark.unit
    def test_rejects_bad_input(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            CreateOrderRequest.parse({"amount": "abc", "merchant_name": "", "pay_address": "x"})

        assert exc_info.value.reason == "invalid_order"
