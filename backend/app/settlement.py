"""
Payment re-summation for orders and invoices.

Status is always recomputed from the sum of completed payments rather than
incremented, so edits and deletions of payments converge to the same result.
"""
from decimal import Decimal

from fastapi import HTTPException

from .ledger import invoice_status_for, payment_status_for, q_money


def paid_total(cur, target: str, target_id, exclude_payment_id=None) -> Decimal:
    column = {"order": "order_id", "invoice": "invoice_id"}[target]
    cur.execute(
        f"""
        SELECT COALESCE(SUM(amount), 0) AS paid
        FROM payments
        WHERE {column} = %s AND status = 'completed'
          AND (%s::uuid IS NULL OR id <> %s::uuid)
        """,
        (target_id, exclude_payment_id, exclude_payment_id),
    )
    return q_money(cur.fetchone()["paid"])


def lock_target(cur, target: str, target_id):
    """
    Row-lock the order/invoice a payment applies to and return it.
    Soft-deleted orders are still found so their payments stay editable;
    callers reject new payments on them through the cancelled status.
    """
    if target == "order":
        cur.execute(
            """
            SELECT id, order_number AS number, customer_id, total, status, payment_status
            FROM orders
            WHERE id = %s
            FOR UPDATE
            """,
            (target_id,),
        )
    else:
        cur.execute(
            """
            SELECT id, invoice_number AS number, customer_id, total, status, paid_amount
            FROM invoices
            WHERE id = %s
            FOR UPDATE
            """,
            (target_id,),
        )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"{target} not found")
    return row


def recompute_order(cur, order_id) -> str:
    cur.execute("SELECT total FROM orders WHERE id = %s", (order_id,))
    row = cur.fetchone()
    if not row:
        return "pending"
    status = payment_status_for(row["total"], paid_total(cur, "order", order_id))
    cur.execute(
        "UPDATE orders SET payment_status = %s, updated_at = now() WHERE id = %s",
        (status, order_id),
    )
    return status


def recompute_invoice(cur, invoice_id) -> dict:
    cur.execute("SELECT total, status FROM invoices WHERE id = %s", (invoice_id,))
    row = cur.fetchone()
    if not row:
        return {}
    paid = paid_total(cur, "invoice", invoice_id)
    status = invoice_status_for(row["status"], row["total"], paid)
    cur.execute(
        "UPDATE invoices SET paid_amount = %s, status = %s, updated_at = now() WHERE id = %s",
        (paid, status, invoice_id),
    )
    return {"paid_amount": paid, "status": status}


def recompute_target(cur, order_id=None, invoice_id=None):
    if order_id:
        recompute_order(cur, order_id)
    if invoice_id:
        recompute_invoice(cur, invoice_id)
