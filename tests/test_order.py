"""
Tests for the per-call order aggregate.
"""

from decimal import Decimal

import pytest

from src.order_relay.order import (
    EmptyAddress,
    EmptyName,
    EmptyOrder,
    InvalidDeliveryMethod,
    InvalidPaymentMethod,
    ItemNotFound,
    MissingCustomerName,
    Order,
    round2,
)


class TestAddItem:
    def test_merges_same_item_and_size(self, order):
        order.add_item("glazed donut", "dozen", 1)
        order.add_item("Glazed Donut", "dozen", 2)

        assert len(order.items) == 1
        line = order.items[0]
        assert line.quantity == 3
        assert line.unit_price == Decimal("22.99")
        assert order.subtotal == Decimal("68.97")
        assert order.tax == Decimal("5.52")
        assert order.total == Decimal("74.49")

    def test_different_sizes_are_separate_lines(self, order):
        order.add_item("glazed donut", "single", 2)
        order.add_item("glazed donut", "dozen", 1)

        assert [(l.size, l.quantity) for l in order.items] == [("single", 2), ("dozen", 1)]
        assert order.subtotal == Decimal("27.97")

    def test_missing_size_defaults_to_single(self, order):
        line = order.add_item("cruller", None)

        assert line.size == "single"
        assert line.unit_price == Decimal("2.99")

    def test_fuzzy_name_is_canonicalized(self, order):
        line = order.add_item("chocolate frosted", "half-dozen")

        assert line.name == "chocolate frosted donut"
        assert line.unit_price == Decimal("15.99")

    def test_unknown_item_raises_and_leaves_order_unchanged(self, order):
        with pytest.raises(ItemNotFound):
            order.add_item("pizza", "large")

        assert order.items == []
        assert order.total == Decimal("0.00")

    def test_quantity_is_at_least_one(self, order):
        line = order.add_item("muffin", "regular", 0)

        assert line.quantity == 1

    def test_unknown_size_uses_first_size_price(self, order):
        line = order.add_item("muffin", "medium")

        assert line.unit_price == Decimal("3.49")


def test_round2_is_half_up():
    assert round2(Decimal("0.125")) == Decimal("0.13")
    assert round2(Decimal("5.5176")) == Decimal("5.52")


def test_custom_tax_rate(menu):
    order = Order("CA1", "MZ1", "+15550000000", menu=menu, tax_rate=Decimal("0.10"))
    order.add_item("coffee", "small")

    assert order.tax == Decimal("0.25")
    assert order.total == Decimal("2.74")


class TestDetails:
    def test_delivery_method(self, order):
        order.set_delivery_method(" Delivery ")
        assert order.delivery_method == "delivery"

        with pytest.raises(InvalidDeliveryMethod):
            order.set_delivery_method("drone")
        assert order.delivery_method == "delivery"

    def test_address_and_name_must_not_be_blank(self, order):
        with pytest.raises(EmptyAddress):
            order.set_address("   ")
        with pytest.raises(EmptyName):
            order.set_customer_name("")

        order.set_address(" 12 Main St ")
        order.set_customer_name(" Jane ")
        assert order.address == "12 Main St"
        assert order.customer_name == "Jane"

    def test_phone_defaults_to_caller(self, order):
        assert order.customer_phone == "+15551234567"

        order.set_customer_phone("555-000-1111")
        assert order.customer_phone == "555-000-1111"

        order.set_customer_phone("")
        assert order.customer_phone == "+15551234567"

    def test_payment_method_normalized(self, order):
        order.set_payment_method("Credit card")
        assert order.payment_method == "card"

        order.set_payment_method("CASH please")
        assert order.payment_method == "cash"

        with pytest.raises(InvalidPaymentMethod):
            order.set_payment_method("bitcoin")


class TestConfirmAndLogging:
    def test_confirm_requires_items(self, order):
        order.set_customer_name("Jane")
        with pytest.raises(EmptyOrder):
            order.confirm()
        assert order.confirmed is False

    def test_confirm_requires_customer_name(self, order):
        order.add_item("glazed donut", "dozen")
        with pytest.raises(MissingCustomerName):
            order.confirm()
        assert order.confirmed is False

    def test_ready_to_log_transitions(self, order):
        assert order.is_ready_to_log() is False

        order.add_item("glazed donut", "dozen")
        order.set_customer_name("Jane")
        assert order.is_ready_to_log() is False

        order.confirm()
        assert order.is_ready_to_log() is True

        order.mark_logged()
        assert order.logged is True
        assert order.is_ready_to_log() is False


class TestSummaries:
    def test_empty_summary(self, order):
        assert order.summary() == "No items in order yet."

    def test_summary_and_full_summary(self, order):
        order.add_item("glazed donut", "dozen", 2)
        order.add_item("coffee", "large")
        order.set_delivery_method("pickup")
        order.set_customer_name("Jane")

        assert order.summary() == "2x dozen glazed donut, 1x large coffee"

        full = order.full_summary()
        assert "2x dozen glazed donut - $45.98" in full
        assert f"Total: ${order.total:.2f}" in full
        assert "Delivery Method: pickup" in full
        assert "Customer: Jane" in full
        assert "Address:" not in full


def test_snapshot_is_frozen_copy(order):
    order.add_item("glazed donut", "dozen")
    order.set_customer_name("Jane")
    order.confirm()

    snapshot = order.snapshot_for_delivery()
    order.add_item("cruller")

    assert len(snapshot.items) == 1
    assert snapshot.idempotency_key == "CA789012"
    assert snapshot.status == "completed"

    record = snapshot.to_record()
    assert record["callSid"] == "CA789012"
    assert record["from"] == "+15551234567"
    assert record["total"] == 24.83
    assert record["items"][0] == {
        "name": "glazed donut",
        "size": "dozen",
        "quantity": 1,
        "price": 22.99,
        "itemTotal": 22.99,
        "specialInstructions": None,
    }
    assert record["itemsSummary"] == "1x dozen glazed donut"


def test_unconfirmed_snapshot_is_pending(order):
    order.add_item("latte", "medium")

    assert order.snapshot_for_delivery().status == "pending"
