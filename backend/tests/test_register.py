from datetime import date
from decimal import Decimal

from backend.app.routers.register import NO_SUPPLIER, build_summary, group_by_supplier


class _FakeCursor:
    def __init__(self, sales=None, payments=None, inventory=None):
        self.sales = list(sales or [])
        self.payments = list(payments or [])
        self.inventory = list(inventory or [])
        self.rows = []
        self.params = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.params.append(params)
        if "from order_items" in text:
            self.rows = self.sales
            return
        if "from payments" in text:
            self.rows = self.payments
            return
        if "from products" in text:
            self.rows = self.inventory
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchall(self):
        return list(self.rows)


def test_group_by_supplier_falls_back_and_sorts():
    rows = [
        {"supplier_name": "Frutas Sur", "product_name": "Mango", "total": Decimal("30")},
        {"supplier_name": None, "product_name": "Limon", "total": Decimal("5")},
        {"supplier_name": "Agro Norte", "product_name": "Pera", "total": Decimal("12.50")},
        {"supplier_name": "Frutas Sur", "product_name": "Papaya", "total": Decimal("20")},
    ]
    groups = group_by_supplier(rows, "total", ("product_name", "total"))

    assert [g["supplier_name"] for g in groups] == ["Agro Norte", "Frutas Sur", NO_SUPPLIER]
    assert groups[1]["total"] == Decimal("50")
    assert [i["product_name"] for i in groups[1]["items"]] == ["Mango", "Papaya"]
    assert groups[2]["items"] == [{"product_name": "Limon", "total": Decimal("5")}]


def test_build_summary_totals():
    cur = _FakeCursor(
        sales=[
            {"supplier_name": "Frutas Sur", "product_name": "Mango", "quantity": 2, "unit_price": 10, "total": Decimal("20")},
            {"supplier_name": None, "product_name": "Limon", "quantity": 1, "unit_price": 5, "total": Decimal("5")},
        ],
        payments=[{"amount": Decimal("15")}, {"amount": Decimal("2.5")}],
        inventory=[{"supplier_name": None, "product_name": "Limon", "sku": "LIM", "stock": Decimal("40"), "unit": "kg"}],
    )
    day = date(2024, 3, 1)

    s = build_summary(cur, day)

    assert s["date"] == day
    assert s["total_sales"] == Decimal("25.00")
    assert s["total_collected"] == Decimal("17.50")
    assert len(s["sales"]) == 2
    assert s["inventory"][0]["supplier_name"] == NO_SUPPLIER
    assert s["inventory"][0]["total"] == Decimal("40")
    assert cur.params[0] == (day,)


def test_build_summary_empty_day():
    s = build_summary(_FakeCursor(), date(2024, 3, 2))
    assert s["total_sales"] == Decimal("0.00")
    assert s["total_collected"] == Decimal("0.00")
    assert s["sales"] == [] and s["payments"] == [] and s["inventory"] == []
