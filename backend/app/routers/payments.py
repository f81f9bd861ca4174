from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..db import get_conn
from ..deps import MANAGERS, STAFF, get_current_user, require_role
from ..ledger import assert_not_overpaid, payment_status_for, q_money, to_decimal
from ..listing import order_clause, page_window, pagination
from ..logs import json_log
from ..numbering import next_document_no
from ..settlement import lock_target, paid_total, recompute_target
from ..validation import PaymentMethod, PaymentRecordStatus

router = APIRouter(prefix="/payments", tags=["payments"])

SORTABLE = {
    "payment_date": "p.payment_date",
    "amount": "p.amount",
    "payment_method": "p.payment_method",
    "created_at": "p.created_at",
}


class PaymentIn(BaseModel):
    order_id: Optional[str] = None
    invoice_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: Decimal
    payment_method: PaymentMethod
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    status: PaymentRecordStatus = "completed"


class PaymentUpdateIn(BaseModel):
    amount: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[datetime] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[PaymentRecordStatus] = None


def _target_of(order_id, invoice_id):
    if bool(order_id) == bool(invoice_id):
        raise HTTPException(status_code=400, detail="exactly one of order_id or invoice_id is required")
    return ("order", order_id) if order_id else ("invoice", invoice_id)


def _assert_target_accepts_payments(target: str, row):
    if row["status"] == "cancelled":
        raise HTTPException(status_code=409, detail=f"cannot apply payments to a cancelled {target}")


@router.get("", dependencies=[Depends(get_current_user)])
def list_payments(
    payment_method: Optional[str] = None,
    status: Optional[PaymentRecordStatus] = None,
    order_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 0,
    sort_by: str = "payment_date",
    sort_order: str = "DESC",
):
    page, limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    for col, val in (
        ("p.payment_method", (payment_method or "").strip().lower() or None),
        ("p.status", status),
        ("p.order_id", order_id),
        ("p.invoice_id", invoice_id),
        ("p.customer_id", customer_id),
    ):
        if val:
            where.append(f"{col} = %s")
            params.append(val)
    if start_date:
        where.append("p.payment_date::date >= %s")
        params.append(start_date)
    if end_date:
        where.append("p.payment_date::date <= %s")
        params.append(end_date)
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT p.*, c.name AS customer_name, o.order_number, i.invoice_number
                FROM payments p
                LEFT JOIN customers c ON c.id = p.customer_id
                LEFT JOIN orders o ON o.id = p.order_id
                LEFT JOIN invoices i ON i.id = p.invoice_id
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "payment_date")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM payments p WHERE {where_sql}", tuple(params))
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/stats/summary", dependencies=[Depends(get_current_user)])
def payment_stats(start_date: Optional[date] = None, end_date: Optional[date] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                  COUNT(*) AS total_payments,
                  COALESCE(SUM(amount), 0) AS total_amount,
                  COALESCE(AVG(amount), 0) AS average_amount,
                  COALESCE(SUM(amount) FILTER (WHERE payment_date::date = CURRENT_DATE), 0) AS today_amount
                FROM payments
                WHERE status = 'completed'
                  AND (%s::date IS NULL OR payment_date::date >= %s::date)
                  AND (%s::date IS NULL OR payment_date::date <= %s::date)
                """,
                (start_date, start_date, end_date, end_date),
            )
            summary = cur.fetchone()
            cur.execute(
                """
                SELECT payment_method, COUNT(*) AS count, COALESCE(SUM(amount), 0) AS total
                FROM payments
                WHERE status = 'completed'
                  AND (%s::date IS NULL OR payment_date::date >= %s::date)
                  AND (%s::date IS NULL OR payment_date::date <= %s::date)
                GROUP BY payment_method
                ORDER BY total DESC
                """,
                (start_date, start_date, end_date, end_date),
            )
            return {"success": True, "data": {**summary, "by_payment_method": cur.fetchall()}}


@router.get("/order/{order_id}/summary", dependencies=[Depends(get_current_user)])
def order_payment_summary(order_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, order_number, total, payment_status FROM orders WHERE id = %s AND deleted_at IS NULL",
                (order_id,),
            )
            order = cur.fetchone()
            if not order:
                raise HTTPException(status_code=404, detail="order not found")
            paid = paid_total(cur, "order", order_id)
            cur.execute(
                """
                SELECT id, payment_number, amount, payment_method, payment_date, status
                FROM payments
                WHERE order_id = %s
                ORDER BY payment_date DESC
                """,
                (order_id,),
            )
            total = q_money(order["total"])
            return {
                "success": True,
                "data": {
                    "order_id": order["id"],
                    "order_number": order["order_number"],
                    "total": total,
                    "paid": paid,
                    "remaining": max(total - paid, Decimal("0")),
                    "payment_status": payment_status_for(total, paid),
                    "payments": cur.fetchall(),
                },
            }


@router.get("/{payment_id}", dependencies=[Depends(get_current_user)])
def get_payment(payment_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.*, c.name AS customer_name, o.order_number, i.invoice_number
                FROM payments p
                LEFT JOIN customers c ON c.id = p.customer_id
                LEFT JOIN orders o ON o.id = p.order_id
                LEFT JOIN invoices i ON i.id = p.invoice_id
                WHERE p.id = %s
                """,
                (payment_id,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="payment not found")
            return {"success": True, "data": row}


@router.post("", status_code=201)
def create_payment(data: PaymentIn, user=Depends(require_role(*STAFF))):
    target, target_id = _target_of(data.order_id, data.invoice_id)
    amount = q_money(data.amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                # The row lock serializes concurrent payments against the same target,
                # so the re-sum below can't be raced.
                row = lock_target(cur, target, target_id)
                _assert_target_accepts_payments(target, row)
                if data.status == "completed":
                    assert_not_overpaid(
                        row["total"],
                        paid_total(cur, target, target_id),
                        amount,
                        detail=f"payment exceeds remaining {target} balance",
                    )

                payment_no = next_document_no(cur, "payment")
                cur.execute(
                    """
                    INSERT INTO payments
                      (id, payment_number, order_id, invoice_id, customer_id, user_id, amount, payment_method,
                       payment_date, reference_number, notes, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()), %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        payment_no,
                        data.order_id,
                        data.invoice_id,
                        data.customer_id or row.get("customer_id"),
                        user["user_id"],
                        amount,
                        data.payment_method,
                        data.payment_date,
                        (data.reference_number or "").strip() or None,
                        (data.notes or "").strip() or None,
                        data.status,
                    ),
                )
                payment = cur.fetchone()
                recompute_target(cur, order_id=data.order_id, invoice_id=data.invoice_id)
                audit(cur, user["user_id"], "payment_created", "payments", payment["id"], {target: row["number"], "amount": amount})
                json_log("info", "payment.created", payment_id=payment["id"], target=target, target_id=target_id, amount=amount)
                return {"success": True, "data": payment, "message": "payment recorded"}


@router.put("/{payment_id}")
def update_payment(payment_id: str, data: PaymentUpdateIn, user=Depends(require_role(*MANAGERS))):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")
    if "amount" in patch:
        if patch["amount"] is None or q_money(patch["amount"]) <= 0:
            raise HTTPException(status_code=400, detail="amount must be > 0")
        patch["amount"] = q_money(patch["amount"])

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM payments WHERE id = %s", (payment_id,))
                payment = cur.fetchone()
                if not payment:
                    raise HTTPException(status_code=404, detail="payment not found")
                target, target_id = _target_of(payment["order_id"], payment["invoice_id"])
                row = lock_target(cur, target, target_id)

                new_amount = patch.get("amount", to_decimal(payment["amount"]))
                new_status = patch.get("status") or payment["status"]
                if new_status == "completed":
                    if payment["status"] != "completed":
                        _assert_target_accepts_payments(target, row)
                    assert_not_overpaid(
                        row["total"],
                        paid_total(cur, target, target_id, exclude_payment_id=payment_id),
                        new_amount,
                        detail=f"payment exceeds remaining {target} balance",
                    )

                fields = []
                params = []
                for k in ("amount", "payment_method", "payment_date", "reference_number", "notes", "status"):
                    if k in patch:
                        fields.append(f"{k} = %s")
                        params.append(patch[k])
                cur.execute(
                    f"""
                    UPDATE payments
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (*params, payment_id),
                )
                updated = cur.fetchone()
                recompute_target(cur, order_id=payment["order_id"], invoice_id=payment["invoice_id"])
                audit(cur, user["user_id"], "payment_updated", "payments", payment_id, patch)
                json_log("info", "payment.updated", payment_id=payment_id, target=target, target_id=target_id)
                return {"success": True, "data": updated, "message": "payment updated"}


@router.delete("/{payment_id}")
def delete_payment(payment_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM payments WHERE id = %s", (payment_id,))
                payment = cur.fetchone()
                if not payment:
                    raise HTTPException(status_code=404, detail="payment not found")
                target, target_id = _target_of(payment["order_id"], payment["invoice_id"])
                lock_target(cur, target, target_id)
                cur.execute("DELETE FROM payments WHERE id = %s", (payment_id,))
                recompute_target(cur, order_id=payment["order_id"], invoice_id=payment["invoice_id"])
                audit(
                    cur,
                    user["user_id"],
                    "payment_deleted",
                    "payments",
                    payment_id,
                    {"payment_number": payment["payment_number"], "amount": payment["amount"]},
                )
                json_log("info", "payment.deleted", payment_id=payment_id, target=target, target_id=target_id)
                return {"success": True, "message": "payment deleted"}
