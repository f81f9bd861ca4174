from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..db import get_conn
from ..deps import MANAGERS, STAFF, get_current_user, require_role
from ..ledger import INVOICE_TRANSITIONS, assert_transition, invoice_status_for, line_total, q_money, to_decimal
from ..listing import order_clause, page_window, pagination
from ..logs import json_log
from ..numbering import next_document_no, peek_document_no
from ..settlement import paid_total, recompute_invoice
from ..validation import InvoiceStatus, PaymentMethod

router = APIRouter(prefix="/invoices", tags=["invoices"])

SORTABLE = {
    "invoice_date": "i.invoice_date",
    "due_date": "i.due_date",
    "invoice_number": "i.invoice_number",
    "total": "i.total",
    "status": "i.status",
    "created_at": "i.created_at",
}


class InvoiceItemIn(BaseModel):
    product_id: Optional[str] = None
    description: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal


class InvoiceIn(BaseModel):
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    items: Optional[List[InvoiceItemIn]] = None
    discount_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    payment_method: PaymentMethod = "cash"
    notes: Optional[str] = None


class InvoiceUpdateIn(BaseModel):
    customer_id: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    items: Optional[List[InvoiceItemIn]] = None
    discount_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    notes: Optional[str] = None


class InvoiceStatusIn(BaseModel):
    status: InvoiceStatus


def invoice_totals(items, discount_amount, tax_amount) -> dict:
    for it in items:
        if to_decimal(it["quantity"]) <= 0:
            raise HTTPException(status_code=400, detail="quantity must be > 0")
        if to_decimal(it["unit_price"]) < 0:
            raise HTTPException(status_code=400, detail="unit_price must be >= 0")
    subtotal = q_money(sum((line_total(it["quantity"], it["unit_price"]) for it in items), Decimal("0")))
    discount = q_money(discount_amount)
    tax = q_money(tax_amount)
    if discount < 0 or tax < 0:
        raise HTTPException(status_code=400, detail="discount and tax must be >= 0")
    if discount > subtotal:
        raise HTTPException(status_code=400, detail="discount cannot exceed subtotal")
    return {"subtotal": subtotal, "discount_amount": discount, "tax_amount": tax, "total": subtotal - discount + tax}


def _insert_items(cur, invoice_id, items):
    for it in items:
        cur.execute(
            """
            INSERT INTO invoice_items (id, invoice_id, product_id, description, quantity, unit_price)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
            """,
            (invoice_id, it.get("product_id"), it.get("description"), it["quantity"], it["unit_price"]),
        )


def _load_invoice(cur, invoice_id: str, lock: bool = False):
    cur.execute(
        f"SELECT * FROM invoices WHERE id = %s {'FOR UPDATE' if lock else ''}",
        (invoice_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="invoice not found")
    return row


@router.get("", dependencies=[Depends(get_current_user)])
def list_invoices(
    status: Optional[InvoiceStatus] = None,
    customer_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: str = "",
    page: int = 1,
    limit: int = 0,
    sort_by: str = "invoice_date",
    sort_order: str = "DESC",
):
    page, limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    if status:
        where.append("i.status = %s")
        params.append(status)
    if customer_id:
        where.append("i.customer_id = %s")
        params.append(customer_id)
    if start_date:
        where.append("i.invoice_date >= %s")
        params.append(start_date)
    if end_date:
        where.append("i.invoice_date <= %s")
        params.append(end_date)
    search = (search or "").strip()
    if search:
        where.append("(i.invoice_number ILIKE %s OR c.name ILIKE %s)")
        params.extend([f"%{search}%", f"%{search}%"])
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT i.*, c.name AS customer_name, o.order_number,
                       i.total - i.paid_amount AS balance_due
                FROM invoices i
                LEFT JOIN customers c ON c.id = i.customer_id
                LEFT JOIN orders o ON o.id = i.order_id
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "invoice_date")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(
                f"""
                SELECT COUNT(*) AS total
                FROM invoices i
                LEFT JOIN customers c ON c.id = i.customer_id
                WHERE {where_sql}
                """,
                tuple(params),
            )
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/summary", dependencies=[Depends(get_current_user)])
def billing_summary():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                  COUNT(*) FILTER (WHERE status = 'paid') AS paid_invoices,
                  COUNT(*) FILTER (WHERE status = 'pending') AS pending_invoices,
                  COUNT(*) FILTER (WHERE status = 'overdue') AS overdue_invoices,
                  COUNT(*) FILTER (WHERE status <> 'cancelled') AS total_invoices,
                  COALESCE(SUM(paid_amount) FILTER (WHERE status <> 'cancelled'), 0) AS paid_amount,
                  COALESCE(SUM(total - paid_amount) FILTER (WHERE status = 'pending'), 0) AS pending_amount,
                  COALESCE(SUM(total - paid_amount) FILTER (WHERE status = 'overdue'), 0) AS overdue_amount,
                  COALESCE(SUM(total) FILTER (WHERE status <> 'cancelled'), 0) AS total_billed
                FROM invoices
                WHERE created_at >= CURRENT_DATE - INTERVAL '1 year'
                """
            )
            return {"success": True, "data": cur.fetchone()}


@router.get("/next-number", dependencies=[Depends(get_current_user)])
def next_invoice_number():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"success": True, "data": {"invoice_number": peek_document_no(cur, "invoice")}}


@router.get("/{invoice_id}", dependencies=[Depends(get_current_user)])
def get_invoice(invoice_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT i.*, c.name AS customer_name, c.email AS customer_email, c.address AS customer_address,
                       c.tax_id AS customer_tax_id, o.order_number
                FROM invoices i
                LEFT JOIN customers c ON c.id = i.customer_id
                LEFT JOIN orders o ON o.id = i.order_id
                WHERE i.id = %s
                """,
                (invoice_id,),
            )
            invoice = cur.fetchone()
            if not invoice:
                raise HTTPException(status_code=404, detail="invoice not found")
            cur.execute(
                """
                SELECT ii.id, ii.product_id, p.name AS product_name, ii.description,
                       ii.quantity, ii.unit_price, ii.total_price
                FROM invoice_items ii
                LEFT JOIN products p ON p.id = ii.product_id
                WHERE ii.invoice_id = %s
                """,
                (invoice_id,),
            )
            items = cur.fetchall()
            cur.execute(
                """
                SELECT id, payment_number, amount, payment_method, payment_date, status
                FROM payments
                WHERE invoice_id = %s
                ORDER BY payment_date DESC
                """,
                (invoice_id,),
            )
            return {"success": True, "data": {**invoice, "items": items, "payments": cur.fetchall()}}


@router.post("", status_code=201)
def create_invoice(data: InvoiceIn, user=Depends(require_role(*STAFF))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                customer_id = data.customer_id
                discount = data.discount_amount
                tax = data.tax_amount
                if data.items:
                    items = [it.model_dump() for it in data.items]
                elif data.order_id:
                    cur.execute(
                        """
                        SELECT id, customer_id, discount_amount, tax_amount, status
                        FROM orders
                        WHERE id = %s AND deleted_at IS NULL
                        """,
                        (data.order_id,),
                    )
                    order = cur.fetchone()
                    if not order:
                        raise HTTPException(status_code=404, detail="order not found")
                    if order["status"] == "cancelled":
                        raise HTTPException(status_code=409, detail="cannot invoice a cancelled order")
                    cur.execute(
                        """
                        SELECT product_id, product_name AS description, quantity, unit_price
                        FROM order_items
                        WHERE order_id = %s
                        """,
                        (data.order_id,),
                    )
                    items = cur.fetchall()
                    customer_id = customer_id or order["customer_id"]
                    if "discount_amount" not in data.model_fields_set:
                        discount = order["discount_amount"]
                    if "tax_amount" not in data.model_fields_set:
                        tax = order["tax_amount"]
                else:
                    raise HTTPException(status_code=400, detail="items or order_id is required")
                if not items:
                    raise HTTPException(status_code=400, detail="at least one item is required")

                totals = invoice_totals(items, discount, tax)
                invoice_no = (data.invoice_number or "").strip() or next_document_no(cur, "invoice")
                cur.execute(
                    """
                    INSERT INTO invoices
                      (id, invoice_number, customer_id, order_id, invoice_date, due_date,
                       subtotal, discount_amount, tax_amount, total, paid_amount, status, notes)
                    VALUES (gen_random_uuid(), %s, %s, %s, COALESCE(%s, CURRENT_DATE), %s, %s, %s, %s, %s, 0, %s, %s)
                    RETURNING *
                    """,
                    (
                        invoice_no,
                        customer_id,
                        data.order_id,
                        data.invoice_date,
                        data.due_date,
                        totals["subtotal"],
                        totals["discount_amount"],
                        totals["tax_amount"],
                        totals["total"],
                        invoice_status_for("pending", totals["total"], 0),
                        (data.notes or "").strip() or None,
                    ),
                )
                invoice = cur.fetchone()
                _insert_items(cur, invoice["id"], items)

                # An amount collected at issue time is recorded as a regular payment.
                initial = q_money(data.paid_amount)
                if initial < 0:
                    raise HTTPException(status_code=400, detail="paid_amount must be >= 0")
                if initial > totals["total"]:
                    raise HTTPException(status_code=400, detail="paid_amount cannot exceed invoice total")
                if initial > 0:
                    cur.execute(
                        """
                        INSERT INTO payments
                          (id, payment_number, invoice_id, customer_id, user_id, amount, payment_method, status)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'completed')
                        """,
                        (next_document_no(cur, "payment"), invoice["id"], customer_id, user["user_id"], initial, data.payment_method),
                    )
                    invoice.update(recompute_invoice(cur, invoice["id"]))

                audit(cur, user["user_id"], "invoice_created", "invoices", invoice["id"], {"invoice_number": invoice_no, "total": totals["total"]})
                json_log("info", "invoice.created", invoice_id=invoice["id"], invoice_number=invoice_no, total=totals["total"])
                return {"success": True, "data": invoice, "message": "invoice created"}


@router.put("/{invoice_id}")
def update_invoice(invoice_id: str, data: InvoiceUpdateIn, user=Depends(require_role(*STAFF))):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                invoice = _load_invoice(cur, invoice_id, lock=True)
                if invoice["status"] not in {"pending", "overdue"}:
                    raise HTTPException(status_code=409, detail=f"cannot edit {invoice['status']} invoice")

                items = patch.get("items")
                if items is not None and not items:
                    raise HTTPException(status_code=400, detail="at least one item is required")
                if items is None:
                    cur.execute(
                        "SELECT product_id, description, quantity, unit_price FROM invoice_items WHERE invoice_id = %s",
                        (invoice_id,),
                    )
                    base_items = cur.fetchall()
                else:
                    base_items = items

                totals = invoice_totals(
                    base_items,
                    patch.get("discount_amount", invoice["discount_amount"]) or 0,
                    patch.get("tax_amount", invoice["tax_amount"]) or 0,
                )
                paid = paid_total(cur, "invoice", invoice_id)
                if paid > totals["total"]:
                    raise HTTPException(status_code=400, detail="invoice total cannot be lower than the amount already paid")

                if items is not None:
                    # Items are replaced wholesale.
                    cur.execute("DELETE FROM invoice_items WHERE invoice_id = %s", (invoice_id,))
                    _insert_items(cur, invoice_id, items)

                fields = ["subtotal = %s", "discount_amount = %s", "tax_amount = %s", "total = %s"]
                params = [totals["subtotal"], totals["discount_amount"], totals["tax_amount"], totals["total"]]
                for k in ("customer_id", "invoice_date", "due_date", "notes"):
                    if k in patch:
                        fields.append(f"{k} = %s")
                        params.append(patch[k])
                cur.execute(
                    f"""
                    UPDATE invoices
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (*params, invoice_id),
                )
                updated = cur.fetchone()
                updated.update(recompute_invoice(cur, invoice_id))
                audit(cur, user["user_id"], "invoice_updated", "invoices", invoice_id, {"total": totals["total"]})
                return {"success": True, "data": updated, "message": "invoice updated"}


@router.patch("/{invoice_id}/status")
def update_invoice_status(invoice_id: str, data: InvoiceStatusIn, user=Depends(require_role(*STAFF))):
    if data.status == "paid":
        raise HTTPException(status_code=400, detail="invoices are marked paid by recording payments")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                invoice = _load_invoice(cur, invoice_id, lock=True)
                current = invoice["status"]
                if not assert_transition(INVOICE_TRANSITIONS, current, data.status, "invoice"):
                    return {"success": True, "data": invoice, "message": "invoice status unchanged"}
                if data.status == "cancelled" and paid_total(cur, "invoice", invoice_id) > 0:
                    raise HTTPException(status_code=409, detail="cannot cancel an invoice with completed payments")
                cur.execute(
                    "UPDATE invoices SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                    (data.status, invoice_id),
                )
                updated = cur.fetchone()
                audit(cur, user["user_id"], "invoice_status_changed", "invoices", invoice_id, {"from": current, "to": data.status})
                return {"success": True, "data": updated, "message": "invoice status updated"}


@router.delete("/{invoice_id}")
def delete_invoice(invoice_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                invoice = _load_invoice(cur, invoice_id, lock=True)
                cur.execute("SELECT COUNT(*) AS n FROM payments WHERE invoice_id = %s", (invoice_id,))
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=409, detail="cannot delete an invoice with payments")
                cur.execute("DELETE FROM invoice_items WHERE invoice_id = %s", (invoice_id,))
                cur.execute("DELETE FROM invoices WHERE id = %s", (invoice_id,))
                audit(cur, user["user_id"], "invoice_deleted", "invoices", invoice_id, {"invoice_number": invoice["invoice_number"]})
                return {"success": True, "message": "invoice deleted"}
