from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.ledger import (
    ORDER_TRANSITIONS,
    PURCHASE_ORDER_TRANSITIONS,
    apply_balance_operation,
    assert_not_overpaid,
    assert_transition,
    document_totals,
    invoice_status_for,
    line_total,
    payment_status_for,
    remaining_to_receive,
    signed_stock_delta,
)


def test_document_totals_without_discount():
    t = document_totals([{"quantity": Decimal("10"), "unit_price": Decimal("5")}])
    assert t["subtotal"] == Decimal("50.00")
    assert t["discount_amount"] == Decimal("0.00")
    assert t["tax_amount"] == Decimal("0.00")
    assert t["total"] == Decimal("50.00")


def test_document_totals_applies_discount_then_tax():
    lines = [
        {"quantity": Decimal("2"), "unit_price": Decimal("12.50")},
        {"quantity": Decimal("1.5"), "unit_price": Decimal("4")},
    ]
    t = document_totals(lines, discount_percentage=Decimal("10"), tax_rate=Decimal("0.18"))
    assert t["subtotal"] == Decimal("31.00")
    assert t["discount_amount"] == Decimal("3.10")
    assert t["tax_amount"] == Decimal("5.02")
    assert t["total"] == Decimal("32.92")


def test_subtotal_is_sum_of_rounded_line_totals():
    lines = [{"quantity": Decimal("0.333"), "unit_price": Decimal("1")}] * 3
    t = document_totals(lines)
    assert t["subtotal"] == line_total(Decimal("0.333"), Decimal("1")) * 3


@pytest.mark.parametrize("pct", [Decimal("-1"), Decimal("100.01")])
def test_discount_percentage_out_of_range(pct):
    with pytest.raises(HTTPException) as e:
        document_totals([{"quantity": 1, "unit_price": 1}], discount_percentage=pct)
    assert e.value.status_code == 400


def test_transition_same_status_is_noop():
    assert assert_transition(ORDER_TRANSITIONS, "pending", "pending") is False
    assert assert_transition(ORDER_TRANSITIONS, "pending", "processing") is True


def test_processing_order_can_go_back_to_pending():
    assert assert_transition(ORDER_TRANSITIONS, "processing", "pending") is True


def test_terminal_order_cannot_change():
    with pytest.raises(HTTPException) as e:
        assert_transition(ORDER_TRANSITIONS, "completed", "cancelled")
    assert e.value.status_code == 400
    with pytest.raises(HTTPException):
        assert_transition(ORDER_TRANSITIONS, "cancelled", "pending")


def test_received_purchase_order_is_terminal():
    with pytest.raises(HTTPException):
        assert_transition(PURCHASE_ORDER_TRANSITIONS, "received", "cancelled", "purchase order")


def test_payment_status_for():
    assert payment_status_for(Decimal("100"), Decimal("0")) == "pending"
    assert payment_status_for(Decimal("100"), Decimal("40")) == "partial"
    assert payment_status_for(Decimal("100"), Decimal("100")) == "paid"


def test_zero_total_is_settled_without_payments():
    assert payment_status_for(Decimal("0"), Decimal("0")) == "paid"
    assert invoice_status_for("pending", Decimal("0"), Decimal("0")) == "paid"


def test_invoice_status_follows_payments():
    assert invoice_status_for("pending", Decimal("200"), Decimal("200")) == "paid"
    assert invoice_status_for("overdue", Decimal("200"), Decimal("50")) == "overdue"
    # A deleted payment takes a paid invoice back to pending.
    assert invoice_status_for("paid", Decimal("200"), Decimal("150")) == "pending"
    assert invoice_status_for("cancelled", Decimal("200"), Decimal("200")) == "cancelled"


def test_overpayment_reports_remaining_balance():
    with pytest.raises(HTTPException) as e:
        assert_not_overpaid(Decimal("200"), Decimal("150"), Decimal("60"))
    assert e.value.status_code == 400
    assert e.value.detail["total"] == "200.00"
    assert e.value.detail["paid"] == "150.00"
    assert e.value.detail["remaining"] == "50.00"

    assert_not_overpaid(Decimal("200"), Decimal("150"), Decimal("50"))


def test_non_positive_payment_is_rejected():
    with pytest.raises(HTTPException):
        assert_not_overpaid(Decimal("200"), Decimal("0"), Decimal("0"))


def test_balance_operations():
    assert apply_balance_operation(Decimal("100"), Decimal("25"), "add") == Decimal("125.00")
    assert apply_balance_operation(Decimal("100"), Decimal("25"), "subtract") == Decimal("75.00")
    assert apply_balance_operation(Decimal("100"), Decimal("25"), "set") == Decimal("25.00")
    with pytest.raises(HTTPException):
        apply_balance_operation(Decimal("100"), Decimal("25"), "multiply")


def test_signed_stock_delta():
    assert signed_stock_delta("in", Decimal("5")) == Decimal("5")
    assert signed_stock_delta("loss", Decimal("5")) == Decimal("-5")
    assert signed_stock_delta("out", Decimal("-5")) == Decimal("-5")
    assert signed_stock_delta("adjustment", Decimal("-3")) == Decimal("-3")


@pytest.mark.parametrize("movement_type", ["in", "purchase", "return"])
def test_inbound_movement_rejects_negative_quantity(movement_type):
    with pytest.raises(HTTPException) as e:
        signed_stock_delta(movement_type, Decimal("-5"))
    assert e.value.status_code == 400


def test_stock_delta_rejects_unknown_type():
    with pytest.raises(HTTPException):
        signed_stock_delta("teleport", Decimal("1"))


def test_remaining_to_receive_never_negative():
    assert remaining_to_receive(Decimal("10"), None) == Decimal("10")
    assert remaining_to_receive(Decimal("10"), Decimal("4")) == Decimal("6")
    assert remaining_to_receive(Decimal("10"), Decimal("12")) == Decimal("0")
