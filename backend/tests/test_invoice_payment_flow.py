from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import invoices as invoices_router
from backend.app.routers import orders as orders_router
from backend.app.routers import payments as payments_router
from backend.app.routers.invoices import InvoiceIn, invoice_totals
from backend.app.routers.orders import OrderIn
from backend.app.routers.payments import PaymentIn, PaymentUpdateIn

ADMIN = {"user_id": "00000000-0000-0000-0000-000000000001", "role": "admin"}


def _invoice(db, total="200", **kw):
    data = InvoiceIn(items=[{"description": "Canasta", "quantity": "1", "unit_price": total}], **kw)
    return invoices_router.create_invoice(data, user=ADMIN)["data"]


def _pay(invoice_id, amount, **kw):
    data = PaymentIn(invoice_id=invoice_id, amount=amount, payment_method="cash", **kw)
    return payments_router.create_payment(data, user=ADMIN)["data"]


def test_invoice_totals():
    t = invoice_totals(
        [{"quantity": Decimal("2"), "unit_price": Decimal("60")}, {"quantity": Decimal("1"), "unit_price": Decimal("80")}],
        Decimal("10"),
        Decimal("5"),
    )
    assert t["subtotal"] == Decimal("200.00")
    assert t["total"] == Decimal("195.00")


def test_invoice_discount_cannot_exceed_subtotal():
    with pytest.raises(HTTPException):
        invoice_totals([{"quantity": 1, "unit_price": 10}], Decimal("11"), Decimal("0"))


def test_full_payment_marks_invoice_paid(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    inv = _invoice(db)
    assert inv["invoice_number"] == "FAC-001"
    assert inv["status"] == "pending"

    payment = _pay(inv["id"], "200")

    assert payment["payment_number"] == "PAY-001"
    assert db.invoices[inv["id"]]["status"] == "paid"
    assert db.invoices[inv["id"]]["paid_amount"] == Decimal("200.00")


def test_partial_payments_accumulate(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    inv = _invoice(db)

    _pay(inv["id"], "120")
    assert db.invoices[inv["id"]]["status"] == "pending"
    assert db.invoices[inv["id"]]["paid_amount"] == Decimal("120.00")

    _pay(inv["id"], "80")
    assert db.invoices[inv["id"]]["status"] == "paid"


def test_payment_on_paid_invoice_is_rejected(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    inv = _invoice(db)
    _pay(inv["id"], "200")

    with pytest.raises(HTTPException) as e:
        _pay(inv["id"], "0.01")
    assert e.value.status_code == 400
    assert e.value.detail["remaining"] == "0.00"
    assert len(db.payments) == 1


def test_overpayment_is_rejected(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    inv = _invoice(db)
    with pytest.raises(HTTPException) as e:
        _pay(inv["id"], "250")
    assert e.value.status_code == 400
    assert db.payments == []
    assert db.invoices[inv["id"]]["status"] == "pending"


def test_pending_payment_does_not_settle(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    inv = _invoice(db)
    _pay(inv["id"], "200", status="pending")
    assert db.invoices[inv["id"]]["status"] == "pending"
    assert db.invoices[inv["id"]]["paid_amount"] == Decimal("0.00")


def test_initial_paid_amount_is_recorded_as_payment(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    inv = _invoice(db, paid_amount="50")
    assert inv["paid_amount"] == Decimal("50.00")
    assert [p["amount"] for p in db.payments] == [Decimal("50.00")]


def test_payment_requires_exactly_one_target(fake_db):
    fake_db.patch(payments_router)
    with pytest.raises(HTTPException) as e:
        payments_router.create_payment(PaymentIn(amount="10", payment_method="cash"), user=ADMIN)
    assert e.value.status_code == 400


def test_order_payments_update_payment_status(fake_db):
    db = fake_db.patch(orders_router, payments_router)
    pid = db.add_product(stock="100")
    order = orders_router.create_order(
        OrderIn(items=[{"product_id": pid, "quantity": "10", "unit_price": "5"}]), user=ADMIN
    )["data"]

    payments_router.create_payment(PaymentIn(order_id=order["id"], amount="20", payment_method="card"), user=ADMIN)
    assert db.orders[order["id"]]["payment_status"] == "partial"

    payments_router.create_payment(PaymentIn(order_id=order["id"], amount="30", payment_method="cash"), user=ADMIN)
    assert db.orders[order["id"]]["payment_status"] == "paid"


def test_zero_total_invoice_is_paid_on_creation(fake_db):
    db = fake_db.patch(invoices_router)
    invoice = _invoice(db, total="0")
    assert invoice["total"] == Decimal("0.00")
    assert invoice["status"] == "paid"


def test_deleting_payment_reopens_paid_invoice(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    invoice = _invoice(db)
    pay = _pay(invoice["id"], "200")
    assert db.invoices[invoice["id"]]["status"] == "paid"

    payments_router.delete_payment(pay["id"], user=ADMIN)

    assert db.invoices[invoice["id"]]["status"] == "pending"
    assert db.invoices[invoice["id"]]["paid_amount"] == Decimal("0.00")


def test_editing_payment_past_invoice_total_is_rejected(fake_db):
    db = fake_db.patch(invoices_router, payments_router)
    invoice = _invoice(db)
    pay = _pay(invoice["id"], "150")

    with pytest.raises(HTTPException) as e:
        payments_router.update_payment(pay["id"], PaymentUpdateIn(amount="250"), user=ADMIN)
    assert e.value.status_code == 400
    assert [p["amount"] for p in db.payments] == [Decimal("150.00")]
    assert db.invoices[invoice["id"]]["paid_amount"] == Decimal("150.00")


def test_refunding_payment_recomputes_order_payment_status(fake_db):
    db = fake_db.patch(orders_router, payments_router)
    pid = db.add_product(stock="100")
    order = orders_router.create_order(
        OrderIn(items=[{"product_id": pid, "quantity": "10", "unit_price": "5"}]), user=ADMIN
    )["data"]
    pay = payments_router.create_payment(PaymentIn(order_id=order["id"], amount="50", payment_method="cash"), user=ADMIN)["data"]
    assert db.orders[order["id"]]["payment_status"] == "paid"

    payments_router.update_payment(pay["id"], PaymentUpdateIn(status="refunded"), user=ADMIN)

    assert db.orders[order["id"]]["payment_status"] == "pending"
