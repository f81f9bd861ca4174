from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import orders as orders_router
from backend.app.routers import payments as payments_router
from backend.app.routers.orders import OrderIn, OrderStatusIn
from backend.app.routers.payments import PaymentIn, PaymentUpdateIn

ADMIN = {"user_id": "00000000-0000-0000-0000-000000000001", "role": "admin"}


def _place(db, pid, qty="10", price="5", **kw):
    data = OrderIn(items=[{"product_id": pid, "quantity": qty, "unit_price": price}], **kw)
    return orders_router.create_order(data, user=ADMIN)["data"]


def test_create_order_decrements_stock_and_records_sale(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")

    order = _place(db, pid)

    assert order["order_number"] == "ORD-001"
    assert order["subtotal"] == Decimal("50.00")
    assert order["total"] == Decimal("50.00")
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert [i["total"] for i in order["items"]] == [Decimal("50.00")]
    assert db.products[pid]["stock"] == Decimal("90")
    assert [(m["movement_type"], m["quantity"], m["reference_type"]) for m in db.movements] == [
        ("out", Decimal("10"), "sale")
    ]


def test_order_numbers_are_sequential(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    assert _place(db, pid, qty="1")["order_number"] == "ORD-001"
    assert _place(db, pid, qty="1")["order_number"] == "ORD-002"


def test_insufficient_stock_rolls_back_whole_order(fake_db):
    db = fake_db.patch(orders_router)
    apples = db.add_product(name="Manzana", stock="100")
    grapes = db.add_product(name="Uva", stock="2")

    data = OrderIn(
        items=[
            {"product_id": apples, "quantity": "10", "unit_price": "1"},
            {"product_id": grapes, "quantity": "5", "unit_price": "1"},
        ]
    )
    with pytest.raises(HTTPException) as e:
        orders_router.create_order(data, user=ADMIN)
    assert e.value.status_code == 400
    assert db.products[apples]["stock"] == Decimal("100")
    assert db.orders == {}
    assert db.movements == []


def test_unknown_customer_is_rejected(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    with pytest.raises(HTTPException) as e:
        _place(db, pid, customer_id="00000000-0000-0000-0000-00000000dead")
    assert e.value.status_code == 404
    assert db.products[pid]["stock"] == Decimal("100")


@pytest.mark.parametrize("qty,price", [("0", "5"), ("-1", "5"), ("1", "-2")])
def test_invalid_lines_are_rejected(fake_db, qty, price):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    with pytest.raises(HTTPException) as e:
        _place(db, pid, qty=qty, price=price)
    assert e.value.status_code == 400
    assert db.executed == []


def test_cancel_restores_stock(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    order = _place(db, pid)

    res = orders_router.update_order_status(order["id"], OrderStatusIn(status="cancelled"), user=ADMIN)

    assert res["data"]["status"] == "cancelled"
    assert db.products[pid]["stock"] == Decimal("100")
    assert [(m["movement_type"], m["reference_type"]) for m in db.movements] == [("out", "sale"), ("in", "return")]


def test_cancelled_order_is_terminal(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    order = _place(db, pid)
    orders_router.update_order_status(order["id"], OrderStatusIn(status="cancelled"), user=ADMIN)

    with pytest.raises(HTTPException) as e:
        orders_router.update_order_status(order["id"], OrderStatusIn(status="pending"), user=ADMIN)
    assert e.value.status_code == 400
    assert db.products[pid]["stock"] == Decimal("100")


def test_completing_order_keeps_stock(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    order = _place(db, pid)

    orders_router.update_order_status(order["id"], OrderStatusIn(status="completed"), user=ADMIN)
    assert db.products[pid]["stock"] == Decimal("90")
    assert len(db.movements) == 1


def test_same_status_is_noop(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    order = _place(db, pid)

    res = orders_router.update_order_status(order["id"], OrderStatusIn(status="pending"), user=ADMIN)
    assert res["message"] == "order status unchanged"


def test_fully_discounted_order_is_paid_on_creation(fake_db):
    db = fake_db.patch(orders_router, payments_router)
    pid = db.add_product(stock="100")

    order = _place(db, pid, discount_percentage="100")

    assert order["total"] == Decimal("0.00")
    assert order["payment_status"] == "paid"
    with pytest.raises(HTTPException) as e:
        payments_router.create_payment(PaymentIn(order_id=order["id"], amount="0.01", payment_method="cash"), user=ADMIN)
    assert e.value.status_code == 400


def test_order_with_completed_payments_cannot_be_cancelled(fake_db):
    db = fake_db.patch(orders_router, payments_router)
    pid = db.add_product(stock="100")
    order = _place(db, pid, qty="4")
    payments_router.create_payment(PaymentIn(order_id=order["id"], amount="20", payment_method="cash"), user=ADMIN)

    with pytest.raises(HTTPException) as e:
        orders_router.update_order_status(order["id"], OrderStatusIn(status="cancelled"), user=ADMIN)
    assert e.value.status_code == 409
    assert db.orders[order["id"]]["status"] == "pending"
    assert db.products[pid]["stock"] == Decimal("96")


def test_payments_of_deleted_order_stay_editable(fake_db):
    db = fake_db.patch(orders_router, payments_router)
    pid = db.add_product(stock="100")
    order = _place(db, pid, qty="4")
    pending = payments_router.create_payment(
        PaymentIn(order_id=order["id"], amount="20", payment_method="cash", status="pending"), user=ADMIN
    )["data"]
    orders_router.update_order_status(order["id"], OrderStatusIn(status="cancelled"), user=ADMIN)
    orders_router.delete_order(order["id"], user=ADMIN)

    # Completing money against a cancelled order is refused, removing the stray row is not.
    with pytest.raises(HTTPException) as e:
        payments_router.update_payment(pending["id"], PaymentUpdateIn(status="completed"), user=ADMIN)
    assert e.value.status_code == 409

    payments_router.delete_payment(pending["id"], user=ADMIN)
    assert db.payments == []


def test_processing_order_can_return_to_pending(fake_db):
    db = fake_db.patch(orders_router)
    pid = db.add_product(stock="100")
    order = _place(db, pid)
    orders_router.update_order_status(order["id"], OrderStatusIn(status="processing"), user=ADMIN)

    res = orders_router.update_order_status(order["id"], OrderStatusIn(status="pending"), user=ADMIN)
    assert res["data"]["status"] == "pending"
    assert db.products[pid]["stock"] == Decimal("90")
