import json
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..audit import audit
from ..db import get_conn
from ..deps import MANAGERS, STAFF, get_current_user, require_role
from ..ledger import q_money, to_decimal
from ..listing import page_window, pagination
from ..logs import json_log

router = APIRouter(prefix="/register", tags=["register"])

NO_SUPPLIER = "Sin Proveedor"


class CloseRegisterIn(BaseModel):
    business_date: Optional[date] = None
    notes: Optional[str] = None


def group_by_supplier(rows, total_key: str, item_keys) -> list:
    """
    Group flat rows by supplier name, summing `total_key` per group.
    Rows without a supplier go under a single fallback group. Groups are
    sorted by name.
    """
    groups = {}
    for r in rows:
        name = r.get("supplier_name") or NO_SUPPLIER
        g = groups.setdefault(name, {"supplier_name": name, "items": [], "total": Decimal("0")})
        g["items"].append({k: r.get(k) for k in item_keys})
        g["total"] += to_decimal(r.get(total_key))
    return sorted(groups.values(), key=lambda g: g["supplier_name"])


def build_summary(cur, business_date: date) -> dict:
    """Sales, collected payments and on-hand inventory for one business day."""
    cur.execute(
        """
        SELECT s.name AS supplier_name, oi.product_name, oi.quantity, oi.unit_price, oi.total,
               o.order_number, o.payment_method AS sale_type
        FROM order_items oi
        JOIN orders o ON o.id = oi.order_id
        LEFT JOIN suppliers s ON s.id = oi.supplier_id
        WHERE o.created_at::date = %s AND o.status <> 'cancelled' AND o.deleted_at IS NULL
        ORDER BY s.name, oi.product_name
        """,
        (business_date,),
    )
    sale_rows = cur.fetchall()
    sales = group_by_supplier(
        sale_rows, "total", ("product_name", "quantity", "unit_price", "total", "order_number", "sale_type")
    )
    total_sales = q_money(sum((to_decimal(r["total"]) for r in sale_rows), Decimal("0")))

    cur.execute(
        """
        SELECT p.id AS payment_id, p.payment_number, p.payment_date, p.amount, p.payment_method,
               p.reference_number, o.order_number, i.invoice_number
        FROM payments p
        LEFT JOIN orders o ON o.id = p.order_id
        LEFT JOIN invoices i ON i.id = p.invoice_id
        WHERE p.payment_date::date = %s AND p.status = 'completed'
        ORDER BY p.payment_date DESC
        """,
        (business_date,),
    )
    payments = cur.fetchall()
    total_collected = q_money(sum((to_decimal(p["amount"]) for p in payments), Decimal("0")))

    cur.execute(
        """
        SELECT s.name AS supplier_name, p.name AS product_name, p.sku, p.stock, p.unit
        FROM products p
        LEFT JOIN suppliers s ON s.id = p.supplier_id
        WHERE p.stock > 0 AND p.deleted_at IS NULL
        ORDER BY s.name, p.name
        """
    )
    inventory = group_by_supplier(cur.fetchall(), "stock", ("product_name", "sku", "stock", "unit"))

    return {
        "date": business_date,
        "total_sales": total_sales,
        "total_collected": total_collected,
        "sales": sales,
        "payments": payments,
        "inventory": inventory,
    }


@router.get("/summary", dependencies=[Depends(get_current_user)])
def register_summary(business_date: Optional[date] = Query(None, alias="date")):
    business_date = business_date or _today()
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"success": True, "data": build_summary(cur, business_date)}


@router.post("/close", status_code=201)
def close_register(data: CloseRegisterIn, user=Depends(require_role(*STAFF))):
    """
    Store an immutable snapshot of the day. Figures are recomputed here, never
    taken from the client.
    """
    business_date = data.business_date or _today()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                summary = build_summary(cur, business_date)
                details = {k: summary[k] for k in ("sales", "payments", "inventory")}
                cur.execute(
                    """
                    INSERT INTO register_closures
                      (id, closing_date, business_date, total_sales, total_collected, details, user_id, notes)
                    VALUES (gen_random_uuid(), now(), %s, %s, %s, %s::jsonb, %s, %s)
                    RETURNING *
                    """,
                    (
                        business_date,
                        summary["total_sales"],
                        summary["total_collected"],
                        json.dumps(details, default=str),
                        user["user_id"],
                        (data.notes or "").strip() or None,
                    ),
                )
                closure = cur.fetchone()
                audit(
                    cur,
                    user["user_id"],
                    "register_closed",
                    "register_closures",
                    closure["id"],
                    {"business_date": business_date, "total_sales": summary["total_sales"]},
                )
    json_log(
        "info",
        "register.closed",
        closure_id=closure["id"],
        business_date=business_date,
        total_sales=summary["total_sales"],
        total_collected=summary["total_collected"],
    )
    return {"success": True, "data": closure, "message": "register closed"}


@router.get("/history", dependencies=[Depends(get_current_user)])
def closure_history(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 0,
):
    page, limit, offset = page_window(page, limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT rc.id, rc.closing_date, rc.business_date, rc.total_sales, rc.total_collected,
                       rc.notes, rc.user_id, u.full_name AS user_name
                FROM register_closures rc
                LEFT JOIN users u ON u.id = rc.user_id
                WHERE (%s::date IS NULL OR rc.business_date >= %s::date)
                  AND (%s::date IS NULL OR rc.business_date <= %s::date)
                ORDER BY rc.closing_date DESC
                LIMIT %s OFFSET %s
                """,
                (start_date, start_date, end_date, end_date, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(
                """
                SELECT COUNT(*) AS total FROM register_closures
                WHERE (%s::date IS NULL OR business_date >= %s::date)
                  AND (%s::date IS NULL OR business_date <= %s::date)
                """,
                (start_date, start_date, end_date, end_date),
            )
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/history/{closure_id}", dependencies=[Depends(get_current_user)])
def get_closure(closure_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT rc.*, u.full_name AS user_name
                FROM register_closures rc
                LEFT JOIN users u ON u.id = rc.user_id
                WHERE rc.id = %s
                """,
                (closure_id,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="closure not found")
            return {"success": True, "data": row}


@router.delete("/history/{closure_id}")
def delete_closure(closure_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM register_closures WHERE id = %s RETURNING business_date, total_sales",
                    (closure_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="closure not found")
                audit(cur, user["user_id"], "register_closure_deleted", "register_closures", closure_id, row)
                return {"success": True, "message": "closure deleted"}


def _today() -> date:
    return date.today()
