from decimal import Decimal

from backend.app.balances import customer_balance
from backend.app.routers import orders as orders_router
from backend.app.routers import payments as payments_router
from backend.app.routers.orders import OrderIn, OrderStatusIn
from backend.app.routers.payments import PaymentIn

ADMIN = {"user_id": "00000000-0000-0000-0000-000000000001", "role": "admin"}


def _balance(db, customer_id):
    with db.conn().cursor() as cur:
        return customer_balance(cur, customer_id)


def _order(customer_id, pid, qty):
    data = OrderIn(customer_id=customer_id, items=[{"product_id": pid, "quantity": qty, "unit_price": "10"}])
    return orders_router.create_order(data, user=ADMIN)["data"]


def test_balance_is_sales_minus_completed_payments(fake_db):
    db = fake_db.patch(orders_router, payments_router)
    cid = db.add_customer(balance="999")
    pid = db.add_product(stock="100")

    first = _order(cid, pid, "10")
    _order(cid, pid, "5")
    payments_router.create_payment(
        PaymentIn(order_id=first["id"], amount="50", payment_method="transfer"), user=ADMIN
    )

    b = _balance(db, cid)
    assert b["total_sales"] == Decimal("150.00")
    assert b["total_paid"] == Decimal("50.00")
    assert b["balance"] == Decimal("100.00")
    # The manually maintained column is not part of the derivation.
    assert db.customers[cid]["balance"] == Decimal("999")


def test_cancelled_orders_leave_the_balance(fake_db):
    db = fake_db.patch(orders_router, payments_router)
    cid = db.add_customer()
    pid = db.add_product(stock="100")

    order = _order(cid, pid, "3")
    assert _balance(db, cid)["balance"] == Decimal("30.00")

    orders_router.update_order_status(order["id"], OrderStatusIn(status="cancelled"), user=ADMIN)
    assert _balance(db, cid)["balance"] == Decimal("0.00")


def test_customer_without_activity_has_zero_balance(fake_db):
    cid = fake_db.add_customer()
    assert _balance(fake_db, cid) == {
        "total_sales": Decimal("0.00"),
        "total_paid": Decimal("0.00"),
        "balance": Decimal("0.00"),
    }
