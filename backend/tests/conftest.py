import copy
import os
import sys
import uuid
from decimal import Decimal

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


def _norm(sql) -> str:
    return " ".join(str(sql).lower().split())


class FakeDB:
    """
    In-memory stand-in for the handful of tables the ledger handlers touch.
    Statements are recognized by substring; anything unknown fails loudly so
    a changed query shows up as a test failure instead of a silent pass.
    """

    def __init__(self):
        self.state = {
            "products": {},
            "customers": {},
            "orders": {},
            "order_items": [],
            "invoices": {},
            "invoice_items": [],
            "payments": [],
            "movements": [],
            "purchase_orders": {},
            "purchase_order_items": [],
            "audit": [],
            "sequences": {},
        }
        self.executed = []

    def __getattr__(self, name):
        state = self.__dict__.get("state")
        if state is not None and name in state:
            return state[name]
        raise AttributeError(name)

    # -- seeding -------------------------------------------------------
    def add_product(self, name="Mango", stock="100", **kw):
        pid = kw.pop("id", None) or str(uuid.uuid4())
        self.products[pid] = {
            "id": pid,
            "name": name,
            "sku": kw.pop("sku", name.upper()[:8]),
            "stock": Decimal(stock),
            "supplier_id": kw.pop("supplier_id", None),
            "deleted_at": None,
            **kw,
        }
        return pid

    def add_customer(self, name="Cliente", balance="0"):
        cid = str(uuid.uuid4())
        self.customers[cid] = {"id": cid, "name": name, "balance": Decimal(balance), "deleted_at": None}
        return cid

    # -- db api --------------------------------------------------------
    def conn(self):
        return _FakeConn(self)

    def get_conn(self):
        return self.conn()


class _FakeTransaction:
    def __init__(self, db: FakeDB):
        self._db = db
        self._snapshot = None

    def __enter__(self):
        self._snapshot = copy.deepcopy(self._db.state)
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._db.state = self._snapshot
        return False


class _FakeConn:
    def __init__(self, db: FakeDB):
        self._db = db

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return _FakeTransaction(self._db)

    def cursor(self):
        return _FakeCursor(self._db)


class _FakeCursor:
    def __init__(self, db: FakeDB):
        self._db = db
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def execute(self, sql, params=()):
        q = _norm(sql)
        params = tuple(params or ())
        db = self._db
        db.executed.append((q, params))
        s = db.state
        rows = []

        if "select next_document_no(" in q:
            kind, prefix = params
            s["sequences"][kind] = s["sequences"].get(kind, 0) + 1
            rows = [{"doc_no": f"{prefix}-{s['sequences'][kind]:03d}"}]

        elif q.startswith("select id from customers where id = %s"):
            c = s["customers"].get(params[0])
            rows = [{"id": c["id"]}] if c and c["deleted_at"] is None else []

        elif q.startswith("insert into orders"):
            (no, customer_id, user_id, subtotal, pct, disc, tax, total, pay_status, method, delivery, notes) = params
            oid = str(uuid.uuid4())
            s["orders"][oid] = {
                "id": oid,
                "order_number": no,
                "customer_id": customer_id,
                "user_id": user_id,
                "subtotal": subtotal,
                "discount_percentage": pct,
                "discount_amount": disc,
                "tax_amount": tax,
                "total": total,
                "status": "pending",
                "payment_status": pay_status,
                "payment_method": method,
                "delivery_date": delivery,
                "notes": notes,
                "deleted_at": None,
            }
            rows = [dict(s["orders"][oid])]

        elif q.startswith("update products set stock = stock - %s"):
            qty, pid, _ = params
            p = s["products"].get(pid)
            if p and p["deleted_at"] is None and p["stock"] >= qty:
                p["stock"] -= qty
                rows = [{k: p[k] for k in ("id", "name", "sku", "stock", "supplier_id")}]

        elif q.startswith("update products set stock = stock + %s"):
            qty, pid = params
            p = s["products"].get(pid)
            if p:
                p["stock"] += qty
                rows = [{k: p[k] for k in ("id", "name", "stock")}]

        elif q.startswith("update products set stock = %s"):
            new_stock, pid = params
            s["products"][pid]["stock"] = new_stock
            rows = [dict(s["products"][pid])]

        elif q.startswith("select id, name, stock from products where id = %s"):
            p = s["products"].get(params[0])
            rows = [{k: p[k] for k in ("id", "name", "stock")}] if p and p["deleted_at"] is None else []

        elif q.startswith("insert into order_items"):
            order_id, product_id, supplier_id, name, sku, qty, price, total = params
            item = {
                "id": str(uuid.uuid4()),
                "order_id": order_id,
                "product_id": product_id,
                "supplier_id": supplier_id,
                "product_name": name,
                "sku": sku,
                "quantity": qty,
                "unit_price": price,
                "total": total,
            }
            s["order_items"].append(item)
            rows = [dict(item)]

        elif "from order_items where order_id = %s" in q:
            rows = [dict(i) for i in s["order_items"] if i["order_id"] == params[0]]

        elif q.startswith("insert into stock_movements"):
            product_id, mtype, qty, ref_type, ref_id, notes, user_id = params
            s["movements"].append(
                {
                    "product_id": product_id,
                    "movement_type": mtype,
                    "quantity": qty,
                    "reference_type": ref_type,
                    "reference_id": ref_id,
                    "notes": notes,
                    "user_id": user_id,
                }
            )

        elif q.startswith("insert into audit_logs"):
            s["audit"].append(params)

        elif q.startswith("select * from orders where id = %s and deleted_at is null"):
            o = s["orders"].get(params[0])
            rows = [dict(o)] if o and o["deleted_at"] is None else []

        elif q.startswith("update orders set status = %s"):
            status, notes, oid = params
            o = s["orders"][oid]
            o["status"] = status
            if notes:
                o["notes"] = notes
            rows = [dict(o)]

        elif q.startswith("select total from orders where id = %s"):
            o = s["orders"].get(params[0])
            rows = [{"total": o["total"]}] if o else []

        elif q.startswith("update orders set payment_status = %s"):
            status, oid = params
            s["orders"][oid]["payment_status"] = status

        elif q.startswith("insert into invoices"):
            (no, customer_id, order_id, inv_date, due, subtotal, disc, tax, total, status, notes) = params
            iid = str(uuid.uuid4())
            s["invoices"][iid] = {
                "id": iid,
                "invoice_number": no,
                "customer_id": customer_id,
                "order_id": order_id,
                "invoice_date": inv_date,
                "due_date": due,
                "subtotal": subtotal,
                "discount_amount": disc,
                "tax_amount": tax,
                "total": total,
                "paid_amount": Decimal("0"),
                "status": status,
                "notes": notes,
            }
            rows = [dict(s["invoices"][iid])]

        elif q.startswith("insert into invoice_items"):
            s["invoice_items"].append(params)

        elif "invoice_number as number" in q and "from invoices" in q:
            i = s["invoices"].get(params[0])
            rows = [{**{k: i[k] for k in ("id", "customer_id", "total", "status", "paid_amount")}, "number": i["invoice_number"]}] if i else []

        elif "order_number as number" in q and "from orders" in q:
            o = s["orders"].get(params[0])
            rows = [{**{k: o[k] for k in ("id", "customer_id", "total", "status", "payment_status")}, "number": o["order_number"]}] if o else []

        elif q.startswith("select coalesce(sum(amount), 0) as paid from payments"):
            column = "invoice_id" if "where invoice_id" in q else "order_id"
            target_id, exclude, _ = params
            total = sum(
                (p["amount"] for p in s["payments"] if p[column] == target_id and p["status"] == "completed" and p["id"] != exclude),
                Decimal("0"),
            )
            rows = [{"paid": total}]

        elif q.startswith("insert into payments") and "payment_date" in q:
            (no, order_id, invoice_id, customer_id, user_id, amount, method, pdate, ref, notes, status) = params
            pay = {
                "id": str(uuid.uuid4()),
                "payment_number": no,
                "order_id": order_id,
                "invoice_id": invoice_id,
                "customer_id": customer_id,
                "user_id": user_id,
                "amount": amount,
                "payment_method": method,
                "reference_number": ref,
                "notes": notes,
                "status": status,
            }
            s["payments"].append(pay)
            rows = [dict(pay)]

        elif q.startswith("insert into payments"):
            no, invoice_id, customer_id, user_id, amount, method = params
            s["payments"].append(
                {
                    "id": str(uuid.uuid4()),
                    "payment_number": no,
                    "order_id": None,
                    "invoice_id": invoice_id,
                    "customer_id": customer_id,
                    "user_id": user_id,
                    "amount": amount,
                    "payment_method": method,
                    "status": "completed",
                }
            )

        elif q.startswith("select total, status from invoices where id = %s"):
            i = s["invoices"].get(params[0])
            rows = [{"total": i["total"], "status": i["status"]}] if i else []

        elif q.startswith("update invoices set paid_amount = %s, status = %s"):
            paid, status, iid = params
            s["invoices"][iid].update(paid_amount=paid, status=status)

        elif "as total_sales" in q and "from payments where customer_id = %s" in q:
            cid = params[0]
            sales = sum(
                (o["total"] for o in s["orders"].values() if o["customer_id"] == cid and o["status"] != "cancelled" and o["deleted_at"] is None),
                Decimal("0"),
            )
            paid = sum(
                (p["amount"] for p in s["payments"] if p["customer_id"] == cid and p["status"] == "completed"),
                Decimal("0"),
            )
            rows = [{"total_sales": sales, "total_paid": paid}]

        elif "from purchase_order_items where purchase_order_id = %s" in q:
            rows = [dict(i) for i in s["purchase_order_items"] if i["purchase_order_id"] == params[0]]

        elif q.startswith("update purchase_order_items set received_quantity = quantity"):
            for i in s["purchase_order_items"]:
                if i["id"] == params[0]:
                    i["received_quantity"] = i["quantity"]

        elif q.startswith("select * from purchase_orders where id = %s"):
            po = s["purchase_orders"].get(params[0])
            rows = [dict(po)] if po else []

        elif q.startswith("update purchase_orders set status = %s"):
            status, _, po_id = params
            s["purchase_orders"][po_id]["status"] = status
            rows = [dict(s["purchase_orders"][po_id])]

        elif q.startswith("update orders set deleted_at = now()"):
            s["orders"][params[0]]["deleted_at"] = "now"

        elif q.startswith("select * from payments where id = %s"):
            rows = [dict(p) for p in s["payments"] if p["id"] == params[0]]

        elif q.startswith("update payments set"):
            # "SET a = %s, b = %s, updated_at = now() WHERE id = %s"
            assignments = q.split(" set ", 1)[1].split(", updated_at")[0]
            names = [a.split(" = ")[0].strip() for a in assignments.split(",")]
            *values, payment_id = params
            for p in s["payments"]:
                if p["id"] == payment_id:
                    p.update(dict(zip(names, values)))
                    rows = [dict(p)]

        elif q.startswith("delete from payments where id = %s"):
            s["payments"] = [p for p in s["payments"] if p["id"] != params[0]]

        else:
            raise AssertionError(f"unexpected sql: {q}")

        self._rows = rows


@pytest.fixture
def fake_db(monkeypatch):
    """A FakeDB whose `patch(*modules)` swaps it in for each module's `get_conn`."""
    db = FakeDB()

    def patch(*modules):
        for m in modules:
            monkeypatch.setattr(m, "get_conn", db.get_conn)
        return db

    db.patch = patch
    return db
