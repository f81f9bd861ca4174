from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..balances import supplier_balance, supplier_balance_columns
from ..db import get_conn
from ..deps import MANAGERS, get_current_user, require_role
from ..ledger import q_money
from ..listing import order_clause, page_window, pagination
from ..logs import json_log
from ..validation import Email, PartyStatus, PaymentMethod

router = APIRouter(prefix="/suppliers", tags=["suppliers"])

SUPPLIER_COLUMNS = """
s.id, s.name, s.email, s.phone, s.address, s.contact_person, s.tax_id,
s.payment_terms, s.status, s.created_at, s.updated_at
"""

SORTABLE = {
    "name": "s.name",
    "created_at": "s.created_at",
    "status": "s.status",
    "balance": "balance",
}


class SupplierIn(BaseModel):
    name: str
    email: Optional[Email] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    contact_person: Optional[str] = None
    tax_id: Optional[str] = None
    payment_terms: int = 30
    status: PartyStatus = "active"


class SupplierUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[Email] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    contact_person: Optional[str] = None
    tax_id: Optional[str] = None
    payment_terms: Optional[int] = None
    status: Optional[PartyStatus] = None


class SupplierPaymentIn(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod
    purchase_order_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None


def _load_supplier(cur, supplier_id: str):
    cur.execute(
        f"SELECT {SUPPLIER_COLUMNS} FROM suppliers s WHERE s.id = %s AND s.deleted_at IS NULL",
        (supplier_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="supplier not found")
    return row


@router.get("", dependencies=[Depends(get_current_user)])
def list_suppliers(
    search: str = "",
    status: Optional[PartyStatus] = None,
    page: int = 1,
    limit: int = 0,
    sort_by: str = "name",
    sort_order: str = "ASC",
):
    page, limit, offset = page_window(page, limit)
    where = ["s.deleted_at IS NULL"]
    params: list = []
    search = (search or "").strip()
    if search:
        where.append("(s.name ILIKE %s OR s.email ILIKE %s OR s.contact_person ILIKE %s OR s.tax_id ILIKE %s)")
        params.extend([f"%{search}%"] * 4)
    if status:
        where.append("s.status = %s")
        params.append(status)
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {SUPPLIER_COLUMNS}, {supplier_balance_columns("s")},
                       (SELECT COUNT(*) FROM products p
                        WHERE p.supplier_id = s.id AND p.deleted_at IS NULL) AS product_count
                FROM suppliers s
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "name")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM suppliers s WHERE {where_sql}", tuple(params))
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/stats/summary", dependencies=[Depends(get_current_user)])
def supplier_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                WITH balances AS (
                  SELECT s.id, s.status, {supplier_balance_columns("s")}
                  FROM suppliers s
                  WHERE s.deleted_at IS NULL
                )
                SELECT
                  COUNT(*) AS total_suppliers,
                  COUNT(*) FILTER (WHERE status = 'active') AS active_suppliers,
                  COALESCE(SUM(total_purchases), 0) AS total_purchases,
                  COALESCE(SUM(balance) FILTER (WHERE balance > 0), 0) AS total_payable,
                  COUNT(*) FILTER (WHERE balance > 0) AS suppliers_with_debt
                FROM balances
                """
            )
            return {"success": True, "data": cur.fetchone()}


@router.get("/{supplier_id}", dependencies=[Depends(get_current_user)])
def get_supplier(supplier_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            supplier = _load_supplier(cur, supplier_id)
            cur.execute(
                """
                SELECT id, name, sku, stock, unit, price, cost
                FROM products
                WHERE supplier_id = %s AND deleted_at IS NULL
                ORDER BY name
                """,
                (supplier_id,),
            )
            products = cur.fetchall()
            return {
                "success": True,
                "data": {**supplier, **supplier_balance(cur, supplier_id), "products": products},
            }


@router.get("/{supplier_id}/account", dependencies=[Depends(get_current_user)])
def supplier_account(supplier_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            supplier = _load_supplier(cur, supplier_id)
            cur.execute(
                """
                SELECT id, order_number AS reference, total_amount AS amount, status,
                       order_date AS date, 'purchase_order' AS type
                FROM purchase_orders
                WHERE supplier_id = %s AND status <> 'cancelled'
                """,
                (supplier_id,),
            )
            debits = [{**r, "is_debit": True} for r in cur.fetchall()]
            cur.execute(
                """
                SELECT sp.id, po.order_number AS reference, sp.amount, sp.status, sp.payment_method,
                       sp.reference_number, sp.payment_date::date AS date, 'payment' AS type
                FROM supplier_payments sp
                LEFT JOIN purchase_orders po ON po.id = sp.purchase_order_id
                WHERE sp.supplier_id = %s AND sp.status = 'completed'
                """,
                (supplier_id,),
            )
            credits = [{**r, "is_credit": True} for r in cur.fetchall()]
            transactions = sorted(debits + credits, key=lambda t: t["date"], reverse=True)
            return {
                "success": True,
                "data": {
                    "supplier": {**supplier, **supplier_balance(cur, supplier_id)},
                    "transactions": transactions,
                },
            }


@router.post("", status_code=201)
def create_supplier(data: SupplierIn, user=Depends(require_role(*MANAGERS))):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if data.payment_terms < 0:
        raise HTTPException(status_code=400, detail="payment_terms must be >= 0")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO suppliers
                      (id, name, email, phone, address, contact_person, tax_id, payment_terms, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        name,
                        data.email,
                        (data.phone or "").strip() or None,
                        (data.address or "").strip() or None,
                        (data.contact_person or "").strip() or None,
                        (data.tax_id or "").strip() or None,
                        data.payment_terms,
                        data.status,
                    ),
                )
                supplier_id = cur.fetchone()["id"]
                audit(cur, user["user_id"], "supplier_created", "suppliers", supplier_id, {"name": name})
                return {"success": True, "data": _load_supplier(cur, supplier_id), "message": "supplier created"}


@router.put("/{supplier_id}")
def update_supplier(supplier_id: str, data: SupplierUpdate, user=Depends(require_role(*MANAGERS))):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    if patch.get("payment_terms") is not None and patch["payment_terms"] < 0:
        raise HTTPException(status_code=400, detail="payment_terms must be >= 0")

    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append((v.strip() or None) if isinstance(v, str) else v)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE suppliers
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING id
                    """,
                    (*params, supplier_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="supplier not found")
                return {"success": True, "data": _load_supplier(cur, supplier_id), "message": "supplier updated"}


@router.post("/{supplier_id}/payments", status_code=201)
def create_supplier_payment(supplier_id: str, data: SupplierPaymentIn, user=Depends(require_role(*MANAGERS))):
    amount = q_money(data.amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id FROM suppliers WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                    (supplier_id,),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="supplier not found")
                if data.purchase_order_id:
                    cur.execute(
                        "SELECT id, status FROM purchase_orders WHERE id = %s AND supplier_id = %s",
                        (data.purchase_order_id, supplier_id),
                    )
                    po = cur.fetchone()
                    if not po:
                        raise HTTPException(status_code=404, detail="purchase order not found")
                    if po["status"] == "cancelled":
                        raise HTTPException(status_code=409, detail="cannot pay a cancelled purchase order")
                cur.execute(
                    """
                    INSERT INTO supplier_payments
                      (id, supplier_id, purchase_order_id, amount, payment_method, payment_date,
                       reference_number, notes, status, user_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, COALESCE(%s, now()), %s, %s, 'completed', %s)
                    RETURNING *
                    """,
                    (
                        supplier_id,
                        data.purchase_order_id,
                        amount,
                        data.payment_method,
                        data.payment_date,
                        (data.reference_number or "").strip() or None,
                        (data.notes or "").strip() or None,
                        user["user_id"],
                    ),
                )
                payment = cur.fetchone()
                audit(cur, user["user_id"], "supplier_payment_created", "supplier_payments", payment["id"], {"supplier_id": supplier_id, "amount": amount})
                json_log("info", "supplier_payment.created", supplier_id=supplier_id, amount=amount)
                return {
                    "success": True,
                    "data": {**payment, "supplier_balance": supplier_balance(cur, supplier_id)["balance"]},
                    "message": "supplier payment recorded",
                }


@router.delete("/{supplier_id}")
def delete_supplier(supplier_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name FROM suppliers WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                    (supplier_id,),
                )
                supplier = cur.fetchone()
                if not supplier:
                    raise HTTPException(status_code=404, detail="supplier not found")
                cur.execute(
                    """
                    SELECT COUNT(*) AS n FROM purchase_orders
                    WHERE supplier_id = %s AND status IN ('pending', 'confirmed')
                    """,
                    (supplier_id,),
                )
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=409, detail="supplier has open purchase orders")
                cur.execute("UPDATE suppliers SET deleted_at = now(), updated_at = now() WHERE id = %s", (supplier_id,))
                audit(cur, user["user_id"], "supplier_deleted", "suppliers", supplier_id, {"name": supplier["name"]})
                return {"success": True, "message": "supplier deleted"}
