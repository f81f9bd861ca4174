from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..db import get_conn
from ..deps import MANAGERS, get_current_user, require_role
from ..ledger import PURCHASE_ORDER_TRANSITIONS, assert_transition, line_total, q_money, remaining_to_receive
from ..listing import order_clause, page_window, pagination
from ..logs import json_log
from ..numbering import next_document_no
from ..stock import put_stock, record_movement
from ..validation import PurchaseOrderStatus

router = APIRouter(prefix="/purchase-orders", tags=["purchase-orders"])

SORTABLE = {
    "order_date": "po.order_date",
    "order_number": "po.order_number",
    "total_amount": "po.total_amount",
    "status": "po.status",
    "supplier_name": "s.name",
    "created_at": "po.created_at",
}


class PurchaseOrderItemIn(BaseModel):
    product_id: str
    quantity: Decimal
    unit_cost: Decimal


class PurchaseOrderIn(BaseModel):
    supplier_id: str
    items: List[PurchaseOrderItemIn]
    expected_delivery_date: Optional[date] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None


class PurchaseOrderStatusIn(BaseModel):
    status: PurchaseOrderStatus


def receive_items(cur, po, user_id=None) -> list:
    """
    Credit stock for every line that is not fully received yet.

    Only `quantity - received_quantity` is credited, so a retried or repeated
    receive never double-counts a line.
    """
    cur.execute(
        """
        SELECT id, product_id, quantity, received_quantity
        FROM purchase_order_items
        WHERE purchase_order_id = %s
        FOR UPDATE
        """,
        (po["id"],),
    )
    received = []
    for item in cur.fetchall():
        qty = remaining_to_receive(item["quantity"], item["received_quantity"])
        if qty <= 0:
            continue
        put_stock(cur, item["product_id"], qty)
        cur.execute(
            "UPDATE purchase_order_items SET received_quantity = quantity WHERE id = %s",
            (item["id"],),
        )
        record_movement(
            cur,
            item["product_id"],
            "in",
            qty,
            reference_type="purchase",
            reference_id=po["id"],
            notes=f"Purchase order {po['order_number']} received",
            user_id=user_id,
        )
        received.append({"product_id": item["product_id"], "quantity": qty})
    return received


@router.get("", dependencies=[Depends(get_current_user)])
def list_purchase_orders(
    status: Optional[PurchaseOrderStatus] = None,
    supplier_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: str = "",
    page: int = 1,
    limit: int = 0,
    sort_by: str = "order_date",
    sort_order: str = "DESC",
):
    page, limit, offset = page_window(page, limit)
    where = ["1=1"]
    params: list = []
    if status:
        where.append("po.status = %s")
        params.append(status)
    if supplier_id:
        where.append("po.supplier_id = %s")
        params.append(supplier_id)
    if start_date:
        where.append("po.order_date >= %s")
        params.append(start_date)
    if end_date:
        where.append("po.order_date <= %s")
        params.append(end_date)
    search = (search or "").strip()
    if search:
        where.append("(po.order_number ILIKE %s OR s.name ILIKE %s)")
        params.extend([f"%{search}%", f"%{search}%"])
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT po.*, s.name AS supplier_name,
                       (SELECT COUNT(*) FROM purchase_order_items i WHERE i.purchase_order_id = po.id) AS items_count
                FROM purchase_orders po
                JOIN suppliers s ON s.id = po.supplier_id
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "order_date")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(
                f"""
                SELECT COUNT(*) AS total
                FROM purchase_orders po
                JOIN suppliers s ON s.id = po.supplier_id
                WHERE {where_sql}
                """,
                tuple(params),
            )
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/{po_id}", dependencies=[Depends(get_current_user)])
def get_purchase_order(po_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT po.*, s.name AS supplier_name, s.email AS supplier_email, s.phone AS supplier_phone
                FROM purchase_orders po
                JOIN suppliers s ON s.id = po.supplier_id
                WHERE po.id = %s
                """,
                (po_id,),
            )
            po = cur.fetchone()
            if not po:
                raise HTTPException(status_code=404, detail="purchase order not found")
            cur.execute(
                """
                SELECT i.id, i.product_id, p.name AS product_name, p.sku, i.quantity, i.unit_cost,
                       i.total_cost, i.received_quantity
                FROM purchase_order_items i
                JOIN products p ON p.id = i.product_id
                WHERE i.purchase_order_id = %s
                ORDER BY p.name
                """,
                (po_id,),
            )
            return {"success": True, "data": {**po, "items": cur.fetchall()}}


@router.post("", status_code=201)
def create_purchase_order(data: PurchaseOrderIn, user=Depends(require_role(*MANAGERS))):
    if not data.items:
        raise HTTPException(status_code=400, detail="at least one item is required")
    for it in data.items:
        if it.quantity <= 0:
            raise HTTPException(status_code=400, detail="quantity must be > 0")
        if it.unit_cost < 0:
            raise HTTPException(status_code=400, detail="unit_cost must be >= 0")
    subtotal = q_money(sum((line_total(it.quantity, it.unit_cost) for it in data.items), Decimal("0")))

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id FROM suppliers WHERE id = %s AND deleted_at IS NULL",
                    (data.supplier_id,),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="supplier not found")

                po_no = next_document_no(cur, "purchase_order")
                tracking = (data.tracking_number or "").strip()
                if tracking:
                    po_no = f"{po_no}-{tracking}"
                cur.execute(
                    """
                    INSERT INTO purchase_orders
                      (id, order_number, supplier_id, order_date, expected_delivery_date,
                       subtotal, tax_amount, total_amount, status, notes)
                    VALUES (gen_random_uuid(), %s, %s, CURRENT_DATE, %s, %s, 0, %s, 'pending', %s)
                    RETURNING *
                    """,
                    (po_no, data.supplier_id, data.expected_delivery_date, subtotal, subtotal, (data.notes or "").strip() or None),
                )
                po = cur.fetchone()
                for it in data.items:
                    cur.execute(
                        """
                        INSERT INTO purchase_order_items
                          (id, purchase_order_id, product_id, quantity, unit_cost, total_cost, received_quantity)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, 0)
                        """,
                        (po["id"], it.product_id, it.quantity, it.unit_cost, line_total(it.quantity, it.unit_cost)),
                    )
                audit(cur, user["user_id"], "purchase_order_created", "purchase_orders", po["id"], {"order_number": po_no, "total": subtotal})
                return {"success": True, "data": po, "message": "purchase order created"}


@router.patch("/{po_id}/status")
def update_purchase_order_status(po_id: str, data: PurchaseOrderStatusIn, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM purchase_orders WHERE id = %s FOR UPDATE", (po_id,))
                po = cur.fetchone()
                if not po:
                    raise HTTPException(status_code=404, detail="purchase order not found")
                current = po["status"]
                if not assert_transition(PURCHASE_ORDER_TRANSITIONS, current, data.status, "purchase order"):
                    return {"success": True, "data": po, "message": "purchase order status unchanged"}

                received = []
                if data.status == "received":
                    received = receive_items(cur, po, user_id=user["user_id"])

                cur.execute(
                    """
                    UPDATE purchase_orders
                    SET status = %s,
                        received_date = CASE WHEN %s = 'received' THEN CURRENT_DATE ELSE received_date END,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (data.status, data.status, po_id),
                )
                updated = cur.fetchone()
                audit(cur, user["user_id"], "purchase_order_status_changed", "purchase_orders", po_id, {"from": current, "to": data.status})
                if received:
                    json_log("info", "purchase_order.received", purchase_order_id=po_id, lines=len(received))
                return {"success": True, "data": {**updated, "received_items": received}, "message": "purchase order status updated"}


@router.delete("/{po_id}")
def delete_purchase_order(po_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, order_number, status FROM purchase_orders WHERE id = %s FOR UPDATE", (po_id,))
                po = cur.fetchone()
                if not po:
                    raise HTTPException(status_code=404, detail="purchase order not found")
                if po["status"] != "pending":
                    raise HTTPException(status_code=409, detail="only pending purchase orders can be deleted")
                cur.execute("DELETE FROM purchase_order_items WHERE purchase_order_id = %s", (po_id,))
                cur.execute("DELETE FROM purchase_orders WHERE id = %s", (po_id,))
                audit(cur, user["user_id"], "purchase_order_deleted", "purchase_orders", po_id, {"order_number": po["order_number"]})
                return {"success": True, "message": "purchase order deleted"}
