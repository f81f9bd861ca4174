from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..balances import customer_balance, customer_balance_columns
from ..db import get_conn
from ..deps import MANAGERS, STAFF, get_current_user, require_role
from ..ledger import apply_balance_operation, q_money
from ..listing import order_clause, page_window, pagination
from ..validation import BalanceOperation, CustomerType, Email, PartyStatus

router = APIRouter(prefix="/customers", tags=["customers"])

CUSTOMER_COLUMNS = """
c.id, c.name, c.email, c.phone, c.address, c.city, c.country, c.tax_id, c.type,
c.credit_limit, c.status, c.created_at, c.updated_at, c.balance AS stored_balance
"""

SORTABLE = {
    "name": "c.name",
    "created_at": "c.created_at",
    "type": "c.type",
    "status": "c.status",
    "balance": "balance",
}


class CustomerIn(BaseModel):
    name: str
    email: Optional[Email] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None
    type: CustomerType = "individual"
    credit_limit: Decimal = Decimal("0")
    status: PartyStatus = "active"


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[Email] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None
    type: Optional[CustomerType] = None
    credit_limit: Optional[Decimal] = None
    status: Optional[PartyStatus] = None


class BalanceAdjustIn(BaseModel):
    amount: Decimal
    operation: BalanceOperation = "add"
    notes: Optional[str] = None


def _assert_email_free(cur, email: Optional[str], exclude_id: Optional[str] = None):
    if not email:
        return
    cur.execute(
        """
        SELECT 1 FROM customers
        WHERE email = %s AND deleted_at IS NULL AND (%s::uuid IS NULL OR id <> %s::uuid)
        """,
        (email, exclude_id, exclude_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="customer email already exists")


@router.get("", dependencies=[Depends(get_current_user)])
def list_customers(
    search: str = "",
    type: Optional[CustomerType] = None,
    status: Optional[PartyStatus] = None,
    page: int = 1,
    limit: int = 0,
    sort_by: str = "name",
    sort_order: str = "ASC",
):
    page, limit, offset = page_window(page, limit)
    where = ["c.deleted_at IS NULL"]
    params: list = []
    search = (search or "").strip()
    if search:
        where.append("(c.name ILIKE %s OR c.email ILIKE %s OR c.phone ILIKE %s OR c.tax_id ILIKE %s)")
        params.extend([f"%{search}%"] * 4)
    if type:
        where.append("c.type = %s")
        params.append(type)
    if status:
        where.append("c.status = %s")
        params.append(status)
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {CUSTOMER_COLUMNS}, {customer_balance_columns("c")},
                       (SELECT COUNT(*) FROM orders o
                        WHERE o.customer_id = c.id AND o.deleted_at IS NULL AND o.status <> 'cancelled') AS total_orders,
                       (SELECT MAX(o.created_at) FROM orders o
                        WHERE o.customer_id = c.id AND o.deleted_at IS NULL) AS last_order_date
                FROM customers c
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "name")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM customers c WHERE {where_sql}", tuple(params))
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/stats/summary", dependencies=[Depends(get_current_user)])
def customer_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                WITH balances AS (
                  SELECT c.id, c.type, c.status, c.created_at, {customer_balance_columns("c")}
                  FROM customers c
                  WHERE c.deleted_at IS NULL
                )
                SELECT
                  COUNT(*) AS total_customers,
                  COUNT(*) FILTER (WHERE status = 'active') AS active_customers,
                  COUNT(*) FILTER (WHERE type = 'business') AS business_customers,
                  COUNT(*) FILTER (WHERE type = 'individual') AS individual_customers,
                  COUNT(*) FILTER (WHERE created_at >= CURRENT_DATE - INTERVAL '30 days') AS new_customers_month,
                  COALESCE(SUM(balance) FILTER (WHERE balance > 0), 0) AS total_receivable,
                  COUNT(*) FILTER (WHERE balance > 0) AS customers_with_debt
                FROM balances
                """
            )
            return {"success": True, "data": cur.fetchone()}


@router.get("/{customer_id}", dependencies=[Depends(get_current_user)])
def get_customer(customer_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {CUSTOMER_COLUMNS} FROM customers c WHERE c.id = %s AND c.deleted_at IS NULL",
                (customer_id,),
            )
            customer = cur.fetchone()
            if not customer:
                raise HTTPException(status_code=404, detail="customer not found")
            cur.execute(
                """
                SELECT id, order_number, total, status, payment_status, created_at
                FROM orders
                WHERE customer_id = %s AND deleted_at IS NULL
                ORDER BY created_at DESC
                LIMIT 10
                """,
                (customer_id,),
            )
            recent_orders = cur.fetchall()
            return {
                "success": True,
                "data": {**customer, **customer_balance(cur, customer_id), "recent_orders": recent_orders},
            }


@router.get("/{customer_id}/account", dependencies=[Depends(get_current_user)])
def customer_account(customer_id: str, start_date: Optional[date] = None, end_date: Optional[date] = None):
    """
    Account statement: orders are debits, completed payments are credits,
    newest first. The balance covers the whole history, not only the window.
    """
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {CUSTOMER_COLUMNS} FROM customers c WHERE c.id = %s AND c.deleted_at IS NULL",
                (customer_id,),
            )
            customer = cur.fetchone()
            if not customer:
                raise HTTPException(status_code=404, detail="customer not found")
            cur.execute(
                """
                SELECT id, order_number AS reference, total AS amount, status, payment_status,
                       created_at AS date, 'order' AS type
                FROM orders
                WHERE customer_id = %s AND deleted_at IS NULL AND status <> 'cancelled'
                  AND (%s::date IS NULL OR created_at::date >= %s::date)
                  AND (%s::date IS NULL OR created_at::date <= %s::date)
                """,
                (customer_id, start_date, start_date, end_date, end_date),
            )
            debits = [{**r, "is_debit": True} for r in cur.fetchall()]
            cur.execute(
                """
                SELECT id, payment_number AS reference, amount, status, payment_method, reference_number,
                       payment_date AS date, 'payment' AS type
                FROM payments
                WHERE customer_id = %s AND status = 'completed'
                  AND (%s::date IS NULL OR payment_date::date >= %s::date)
                  AND (%s::date IS NULL OR payment_date::date <= %s::date)
                """,
                (customer_id, start_date, start_date, end_date, end_date),
            )
            credits = [{**r, "is_credit": True} for r in cur.fetchall()]
            transactions = sorted(debits + credits, key=lambda t: t["date"], reverse=True)
            return {
                "success": True,
                "data": {
                    "customer": {**customer, **customer_balance(cur, customer_id)},
                    "transactions": transactions,
                },
            }


@router.post("", status_code=201)
def create_customer(data: CustomerIn, user=Depends(require_role(*STAFF))):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if data.credit_limit < 0:
        raise HTTPException(status_code=400, detail="credit_limit must be >= 0")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_email_free(cur, data.email)
                cur.execute(
                    """
                    INSERT INTO customers
                      (id, name, email, phone, address, city, country, tax_id, type, credit_limit, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        name,
                        data.email,
                        (data.phone or "").strip() or None,
                        (data.address or "").strip() or None,
                        (data.city or "").strip() or None,
                        (data.country or "").strip() or None,
                        (data.tax_id or "").strip() or None,
                        data.type,
                        data.credit_limit,
                        data.status,
                    ),
                )
                customer_id = cur.fetchone()["id"]
                cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers c WHERE c.id = %s", (customer_id,))
                return {"success": True, "data": cur.fetchone(), "message": "customer created"}


@router.put("/{customer_id}")
def update_customer(customer_id: str, data: CustomerUpdate, user=Depends(require_role(*STAFF))):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    if patch.get("credit_limit") is not None and patch["credit_limit"] < 0:
        raise HTTPException(status_code=400, detail="credit_limit must be >= 0")

    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append((v.strip() or None) if isinstance(v, str) else v)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if "email" in patch:
                    _assert_email_free(cur, patch["email"], exclude_id=customer_id)
                cur.execute(
                    f"""
                    UPDATE customers
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING id
                    """,
                    (*params, customer_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="customer not found")
                cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers c WHERE c.id = %s", (customer_id,))
                return {"success": True, "data": cur.fetchone(), "message": "customer updated"}


@router.patch("/{customer_id}/balance")
def adjust_stored_balance(customer_id: str, data: BalanceAdjustIn, user=Depends(require_role(*MANAGERS))):
    """
    Adjusts the manually maintained `balance` column. The derived balance
    returned by the read endpoints is unaffected.
    """
    if data.operation != "set" and q_money(data.amount) <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, balance FROM customers WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                    (customer_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="customer not found")
                new_balance = apply_balance_operation(row["balance"], data.amount, data.operation)
                cur.execute(
                    "UPDATE customers SET balance = %s, updated_at = now() WHERE id = %s",
                    (new_balance, customer_id),
                )
                audit(
                    cur,
                    user["user_id"],
                    "customer_balance_adjusted",
                    "customers",
                    customer_id,
                    {"operation": data.operation, "amount": data.amount, "previous": row["balance"], "new": new_balance, "notes": data.notes},
                )
                return {
                    "success": True,
                    "data": {
                        "id": customer_id,
                        "previous_stored_balance": q_money(row["balance"]),
                        "stored_balance": new_balance,
                        **customer_balance(cur, customer_id),
                    },
                    "message": "stored balance updated",
                }


@router.delete("/{customer_id}")
def delete_customer(customer_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name FROM customers WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                    (customer_id,),
                )
                customer = cur.fetchone()
                if not customer:
                    raise HTTPException(status_code=404, detail="customer not found")
                cur.execute(
                    """
                    SELECT COUNT(*) AS n FROM orders
                    WHERE customer_id = %s AND deleted_at IS NULL AND status IN ('pending', 'processing')
                    """,
                    (customer_id,),
                )
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=409, detail="customer has open orders")
                balance = customer_balance(cur, customer_id)["balance"]
                if balance != 0:
                    raise HTTPException(status_code=409, detail=f"customer has an outstanding balance of {balance}")
                cur.execute("UPDATE customers SET deleted_at = now(), updated_at = now() WHERE id = %s", (customer_id,))
                audit(cur, user["user_id"], "customer_deleted", "customers", customer_id, {"name": customer["name"]})
                return {"success": True, "message": "customer deleted"}
