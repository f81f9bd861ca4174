from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..config import settings
from ..db import get_conn
from ..deps import MANAGERS, STAFF, get_current_user, require_role
from ..ledger import ORDER_TRANSITIONS, assert_transition, document_totals, line_total, payment_status_for, to_decimal
from ..listing import order_clause, page_window, pagination
from ..logs import json_log
from ..numbering import next_document_no, peek_document_no
from ..settlement import paid_total
from ..stock import put_stock, record_movement, take_stock
from ..validation import OrderStatus, PaymentMethod, PaymentStatus

router = APIRouter(prefix="/orders", tags=["orders"])

SORTABLE = {
    "created_at": "o.created_at",
    "order_number": "o.order_number",
    "total": "o.total",
    "status": "o.status",
    "customer_name": "c.name",
}


class OrderItemIn(BaseModel):
    product_id: str
    quantity: Decimal
    unit_price: Decimal


class OrderIn(BaseModel):
    customer_id: Optional[str] = None
    items: List[OrderItemIn]
    discount_percentage: Decimal = Decimal("0")
    payment_method: Optional[PaymentMethod] = None
    delivery_date: Optional[date] = None
    notes: Optional[str] = None


class OrderUpdateIn(BaseModel):
    discount_percentage: Optional[Decimal] = None
    notes: Optional[str] = None
    delivery_date: Optional[date] = None


class OrderStatusIn(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


def _load_order(cur, order_id: str, lock: bool = False):
    cur.execute(
        f"""
        SELECT *
        FROM orders
        WHERE id = %s AND deleted_at IS NULL
        {"FOR UPDATE" if lock else ""}
        """,
        (order_id,),
    )
    order = cur.fetchone()
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    return order


def _order_items(cur, order_id: str):
    cur.execute(
        """
        SELECT id, product_id, supplier_id, product_name, sku, quantity, unit_price, total
        FROM order_items
        WHERE order_id = %s
        ORDER BY product_name
        """,
        (order_id,),
    )
    return cur.fetchall()


@router.get("", dependencies=[Depends(get_current_user)])
def list_orders(
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    customer_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: str = "",
    page: int = 1,
    limit: int = 0,
    sort_by: str = "created_at",
    sort_order: str = "DESC",
):
    page, limit, offset = page_window(page, limit)
    where = ["o.deleted_at IS NULL"]
    params: list = []
    if status:
        where.append("o.status = %s")
        params.append(status)
    if payment_status:
        where.append("o.payment_status = %s")
        params.append(payment_status)
    if customer_id:
        where.append("o.customer_id = %s")
        params.append(customer_id)
    if start_date:
        where.append("o.created_at::date >= %s")
        params.append(start_date)
    if end_date:
        where.append("o.created_at::date <= %s")
        params.append(end_date)
    search = (search or "").strip()
    if search:
        where.append("(o.order_number ILIKE %s OR c.name ILIKE %s)")
        params.extend([f"%{search}%", f"%{search}%"])
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT o.*, c.name AS customer_name,
                       (SELECT COUNT(*) FROM order_items oi WHERE oi.order_id = o.id) AS items_count
                FROM orders o
                LEFT JOIN customers c ON c.id = o.customer_id
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "created_at")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(
                f"""
                SELECT COUNT(*) AS total
                FROM orders o
                LEFT JOIN customers c ON c.id = o.customer_id
                WHERE {where_sql}
                """,
                tuple(params),
            )
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/next-number", dependencies=[Depends(get_current_user)])
def next_order_number():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"success": True, "data": {"order_number": peek_document_no(cur, "order")}}


@router.get("/stats/summary", dependencies=[Depends(get_current_user)])
def order_stats_summary():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                  COUNT(*) AS total_orders,
                  COUNT(*) FILTER (WHERE status = 'pending') AS pending_orders,
                  COUNT(*) FILTER (WHERE status = 'processing') AS processing_orders,
                  COUNT(*) FILTER (WHERE status = 'completed') AS completed_orders,
                  COUNT(*) FILTER (WHERE status = 'cancelled') AS cancelled_orders,
                  COALESCE(SUM(total) FILTER (WHERE status <> 'cancelled'), 0) AS total_revenue,
                  COALESCE(AVG(total) FILTER (WHERE status <> 'cancelled'), 0) AS average_order_value,
                  COUNT(*) FILTER (WHERE created_at::date = CURRENT_DATE) AS today_orders,
                  COALESCE(SUM(total) FILTER (WHERE created_at::date = CURRENT_DATE AND status <> 'cancelled'), 0) AS today_revenue
                FROM orders
                WHERE deleted_at IS NULL
                """
            )
            return {"success": True, "data": cur.fetchone()}


@router.get("/stats/financial", dependencies=[Depends(get_current_user)])
def order_stats_financial(start_date: Optional[date] = None, end_date: Optional[date] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                  COALESCE(SUM(o.total), 0) AS total_sales,
                  COALESCE(SUM(o.discount_amount), 0) AS total_discounts,
                  COUNT(*) AS orders_count,
                  COUNT(*) FILTER (WHERE o.payment_status = 'paid') AS paid_orders,
                  COUNT(*) FILTER (WHERE o.payment_status = 'partial') AS partial_orders,
                  COUNT(*) FILTER (WHERE o.payment_status = 'pending') AS unpaid_orders
                FROM orders o
                WHERE o.deleted_at IS NULL AND o.status <> 'cancelled'
                  AND (%s::date IS NULL OR o.created_at::date >= %s::date)
                  AND (%s::date IS NULL OR o.created_at::date <= %s::date)
                """,
                (start_date, start_date, end_date, end_date),
            )
            sales = cur.fetchone()
            cur.execute(
                """
                SELECT COALESCE(SUM(p.amount), 0) AS collected
                FROM payments p
                JOIN orders o ON o.id = p.order_id
                WHERE p.status = 'completed' AND o.deleted_at IS NULL AND o.status <> 'cancelled'
                  AND (%s::date IS NULL OR o.created_at::date >= %s::date)
                  AND (%s::date IS NULL OR o.created_at::date <= %s::date)
                """,
                (start_date, start_date, end_date, end_date),
            )
            collected = to_decimal(cur.fetchone()["collected"])
            total_sales = to_decimal(sales["total_sales"])
            return {
                "success": True,
                "data": {
                    **sales,
                    "total_collected": collected,
                    "total_outstanding": total_sales - collected,
                },
            }


@router.get("/{order_id}", dependencies=[Depends(get_current_user)])
def get_order(order_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT o.*, c.name AS customer_name, c.email AS customer_email, c.phone AS customer_phone
                FROM orders o
                LEFT JOIN customers c ON c.id = o.customer_id
                WHERE o.id = %s AND o.deleted_at IS NULL
                """,
                (order_id,),
            )
            order = cur.fetchone()
            if not order:
                raise HTTPException(status_code=404, detail="order not found")
            items = _order_items(cur, order_id)
            cur.execute(
                """
                SELECT id, payment_number, amount, payment_method, payment_date, status, reference_number
                FROM payments
                WHERE order_id = %s
                ORDER BY payment_date DESC
                """,
                (order_id,),
            )
            payments = cur.fetchall()
            paid = sum((to_decimal(p["amount"]) for p in payments if p["status"] == "completed"), Decimal("0"))
            return {
                "success": True,
                "data": {
                    **order,
                    "items": items,
                    "payments": payments,
                    "paid_amount": paid,
                    "balance_due": to_decimal(order["total"]) - paid,
                },
            }


@router.post("", status_code=201)
def create_order(data: OrderIn, user=Depends(require_role(*STAFF))):
    if not data.items:
        raise HTTPException(status_code=400, detail="at least one item is required")
    for it in data.items:
        if it.quantity <= 0:
            raise HTTPException(status_code=400, detail="quantity must be > 0")
        if it.unit_price < 0:
            raise HTTPException(status_code=400, detail="unit_price must be >= 0")

    totals = document_totals(
        [{"quantity": it.quantity, "unit_price": it.unit_price} for it in data.items],
        discount_percentage=data.discount_percentage,
        tax_rate=settings.sales_tax_rate,
    )

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if data.customer_id:
                    cur.execute(
                        "SELECT id FROM customers WHERE id = %s AND deleted_at IS NULL",
                        (data.customer_id,),
                    )
                    if not cur.fetchone():
                        raise HTTPException(status_code=404, detail="customer not found")

                order_no = next_document_no(cur, "order")
                cur.execute(
                    """
                    INSERT INTO orders
                      (id, order_number, customer_id, user_id, subtotal, discount_percentage, discount_amount,
                       tax_amount, total, status, payment_status, payment_method, delivery_date, notes)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, 'pending', %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        order_no,
                        data.customer_id,
                        user["user_id"],
                        totals["subtotal"],
                        totals["discount_percentage"],
                        totals["discount_amount"],
                        totals["tax_amount"],
                        totals["total"],
                        payment_status_for(totals["total"], 0),
                        data.payment_method,
                        data.delivery_date,
                        (data.notes or "").strip() or None,
                    ),
                )
                order = cur.fetchone()

                items = []
                for it in data.items:
                    product = take_stock(cur, it.product_id, it.quantity)
                    total = line_total(it.quantity, it.unit_price)
                    cur.execute(
                        """
                        INSERT INTO order_items
                          (id, order_id, product_id, supplier_id, product_name, sku, quantity, unit_price, total)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING id, product_id, product_name, sku, quantity, unit_price, total
                        """,
                        (
                            order["id"],
                            it.product_id,
                            product.get("supplier_id"),
                            product["name"],
                            product.get("sku"),
                            it.quantity,
                            it.unit_price,
                            total,
                        ),
                    )
                    items.append(cur.fetchone())
                    record_movement(
                        cur,
                        it.product_id,
                        "out",
                        it.quantity,
                        reference_type="sale",
                        reference_id=order["id"],
                        notes=f"Sale from order {order_no}",
                        user_id=user["user_id"],
                    )

                audit(cur, user["user_id"], "order_created", "orders", order["id"], {"order_number": order_no, "total": totals["total"]})
                json_log("info", "order.created", order_id=order["id"], order_number=order_no, total=totals["total"])
                return {"success": True, "data": {**order, "items": items}, "message": "order created"}


@router.put("/{order_id}")
def update_order(order_id: str, data: OrderUpdateIn, user=Depends(require_role(*STAFF))):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                order = _load_order(cur, order_id, lock=True)
                if not ORDER_TRANSITIONS.get(order["status"]):
                    raise HTTPException(status_code=409, detail=f"cannot edit {order['status']} order")

                fields = []
                params = []
                if "discount_percentage" in patch and patch["discount_percentage"] is not None:
                    totals = document_totals(
                        _order_items(cur, order_id),
                        discount_percentage=patch["discount_percentage"],
                        tax_rate=settings.sales_tax_rate,
                    )
                    paid = paid_total(cur, "order", order_id)
                    if paid > totals["total"]:
                        raise HTTPException(status_code=400, detail="order total cannot be lower than the amount already paid")
                    for k in ("subtotal", "discount_percentage", "discount_amount", "tax_amount", "total"):
                        fields.append(f"{k} = %s")
                        params.append(totals[k])
                    fields.append("payment_status = %s")
                    params.append(payment_status_for(totals["total"], paid))
                if "notes" in patch:
                    fields.append("notes = %s")
                    params.append((patch["notes"] or "").strip() or None)
                if "delivery_date" in patch:
                    fields.append("delivery_date = %s")
                    params.append(patch["delivery_date"])
                if not fields:
                    raise HTTPException(status_code=400, detail="no fields to update")

                cur.execute(
                    f"""
                    UPDATE orders
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (*params, order_id),
                )
                updated = cur.fetchone()
                audit(cur, user["user_id"], "order_updated", "orders", order_id, patch)
                return {"success": True, "data": updated, "message": "order updated"}


@router.patch("/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusIn, user=Depends(require_role(*STAFF))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                order = _load_order(cur, order_id, lock=True)
                current = order["status"]
                if not assert_transition(ORDER_TRANSITIONS, current, data.status, "order"):
                    return {"success": True, "data": order, "message": "order status unchanged"}

                if data.status == "cancelled":
                    if paid_total(cur, "order", order_id) > 0:
                        raise HTTPException(status_code=409, detail="cannot cancel an order with completed payments")
                    # Inverse of placement: every line goes back on the shelf.
                    for item in _order_items(cur, order_id):
                        put_stock(cur, item["product_id"], item["quantity"])
                        record_movement(
                            cur,
                            item["product_id"],
                            "in",
                            item["quantity"],
                            reference_type="return",
                            reference_id=order_id,
                            notes=f"Order cancellation {order['order_number']}",
                            user_id=user["user_id"],
                        )

                cur.execute(
                    """
                    UPDATE orders
                    SET status = %s, notes = COALESCE(%s, notes), updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (data.status, (data.notes or "").strip() or None, order_id),
                )
                updated = cur.fetchone()
                audit(cur, user["user_id"], "order_status_changed", "orders", order_id, {"from": current, "to": data.status})
                json_log("info", "order.status_changed", order_id=order_id, from_status=current, to_status=data.status)
                return {"success": True, "data": updated, "message": "order status updated"}


@router.delete("/{order_id}")
def delete_order(order_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                order = _load_order(cur, order_id, lock=True)
                # Only cancelled orders can be hidden; their stock was already restored.
                if order["status"] != "cancelled":
                    raise HTTPException(status_code=409, detail="only cancelled orders can be deleted")
                cur.execute("UPDATE orders SET deleted_at = now(), updated_at = now() WHERE id = %s", (order_id,))
                audit(cur, user["user_id"], "order_deleted", "orders", order_id, {"order_number": order["order_number"]})
                return {"success": True, "message": "order deleted"}
