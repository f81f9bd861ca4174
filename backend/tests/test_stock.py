from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import products as products_router
from backend.app.routers.products import StockAdjustIn
from backend.app.stock import put_stock, take_stock

ADMIN = {"user_id": "00000000-0000-0000-0000-000000000001", "role": "admin"}


def test_take_stock_decrements(fake_db):
    pid = fake_db.add_product(stock="12")
    with fake_db.conn().cursor() as cur:
        row = take_stock(cur, pid, Decimal("5"))
    assert row["stock"] == Decimal("7")
    assert fake_db.products[pid]["stock"] == Decimal("7")


def test_take_stock_insufficient_reports_available(fake_db):
    pid = fake_db.add_product(name="Papaya", stock="3")
    with fake_db.conn().cursor() as cur:
        with pytest.raises(HTTPException) as e:
            take_stock(cur, pid, Decimal("5"))
    assert e.value.status_code == 400
    assert e.value.detail["available"] == "3"
    assert e.value.detail["requested"] == "5"
    assert "Papaya" in e.value.detail["error"]
    assert fake_db.products[pid]["stock"] == Decimal("3")


def test_take_stock_unknown_product(fake_db):
    with fake_db.conn().cursor() as cur:
        with pytest.raises(HTTPException) as e:
            take_stock(cur, "missing", Decimal("1"))
    assert e.value.status_code == 404


def test_put_stock_unknown_product(fake_db):
    with fake_db.conn().cursor() as cur:
        with pytest.raises(HTTPException) as e:
            put_stock(cur, "missing", Decimal("1"))
    assert e.value.status_code == 404


def test_outbound_adjustment_records_positive_quantity(fake_db):
    db = fake_db.patch(products_router)
    pid = db.add_product(stock="10")

    res = products_router.adjust_stock(pid, StockAdjustIn(quantity="4", type="out"), user=ADMIN)

    assert res["data"]["adjustment"] == Decimal("-4")
    assert db.products[pid]["stock"] == Decimal("6")
    assert [(m["movement_type"], m["quantity"]) for m in db.movements] == [("out", Decimal("4"))]


def test_manual_adjustment_keeps_its_sign(fake_db):
    db = fake_db.patch(products_router)
    pid = db.add_product(stock="10")

    products_router.adjust_stock(pid, StockAdjustIn(quantity="-2"), user=ADMIN)

    assert db.products[pid]["stock"] == Decimal("8")
    assert [(m["movement_type"], m["quantity"]) for m in db.movements] == [("adjustment", Decimal("-2"))]


def test_inbound_adjustment_rejects_negative_quantity(fake_db):
    db = fake_db.patch(products_router)
    pid = db.add_product(stock="10")

    with pytest.raises(HTTPException) as e:
        products_router.adjust_stock(pid, StockAdjustIn(quantity="-5", type="in"), user=ADMIN)
    assert e.value.status_code == 400
    assert db.products[pid]["stock"] == Decimal("10")
    assert db.movements == []
