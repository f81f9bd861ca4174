from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import purchase_orders as po_router
from backend.app.routers.purchase_orders import PurchaseOrderStatusIn, receive_items

ADMIN = {"user_id": "00000000-0000-0000-0000-000000000001", "role": "admin"}


def _po_with_lines(db, *lines):
    po = {"id": "po-1", "order_number": "PO-001"}
    for n, (pid, qty, received) in enumerate(lines):
        db.purchase_order_items.append(
            {
                "id": f"line-{n}",
                "purchase_order_id": po["id"],
                "product_id": pid,
                "quantity": Decimal(qty),
                "received_quantity": Decimal(received) if received is not None else None,
            }
        )
    return po


def test_receive_credits_remaining_quantity_once(fake_db):
    pid = fake_db.add_product(stock="5")
    po = _po_with_lines(fake_db, (pid, "20", None))

    with fake_db.conn().cursor() as cur:
        first = receive_items(cur, po, user_id="u1")
        second = receive_items(cur, po, user_id="u1")

    assert first == [{"product_id": pid, "quantity": Decimal("20")}]
    assert second == []
    assert fake_db.products[pid]["stock"] == Decimal("25")
    assert [(m["movement_type"], m["reference_type"]) for m in fake_db.movements] == [("in", "purchase")]


def test_receive_skips_fully_received_lines(fake_db):
    a = fake_db.add_product(name="Pera", stock="0")
    b = fake_db.add_product(name="Kiwi", stock="0")
    po = _po_with_lines(fake_db, (a, "10", "10"), (b, "8", "3"))

    with fake_db.conn().cursor() as cur:
        received = receive_items(cur, po)

    assert received == [{"product_id": b, "quantity": Decimal("5")}]
    assert fake_db.products[a]["stock"] == Decimal("0")
    assert fake_db.products[b]["stock"] == Decimal("5")


def test_status_change_to_received_credits_stock_once(fake_db):
    db = fake_db.patch(po_router)
    pid = db.add_product(stock="5")
    po = _po_with_lines(db, (pid, "20", None))
    db.purchase_orders[po["id"]] = {**po, "status": "confirmed"}

    first = po_router.update_purchase_order_status(po["id"], PurchaseOrderStatusIn(status="received"), user=ADMIN)
    assert first["data"]["status"] == "received"
    assert first["data"]["received_items"] == [{"product_id": pid, "quantity": Decimal("20")}]

    # Receiving again is a no-op rather than a second credit.
    again = po_router.update_purchase_order_status(po["id"], PurchaseOrderStatusIn(status="received"), user=ADMIN)
    assert again["message"] == "purchase order status unchanged"
    assert db.products[pid]["stock"] == Decimal("25")
    assert len(db.movements) == 1


def test_received_purchase_order_cannot_be_cancelled(fake_db):
    db = fake_db.patch(po_router)
    db.purchase_orders["po-1"] = {"id": "po-1", "order_number": "PO-001", "status": "received"}

    with pytest.raises(HTTPException) as e:
        po_router.update_purchase_order_status("po-1", PurchaseOrderStatusIn(status="cancelled"), user=ADMIN)
    assert e.value.status_code == 400
    assert db.purchase_orders["po-1"]["status"] == "received"
