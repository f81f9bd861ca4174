from datetime import date, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException

from ..balances import customer_balance_columns
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import q_money, to_decimal

router = APIRouter(prefix="/reports", tags=["reports"], dependencies=[Depends(get_current_user)])

PERIOD_DAYS = {"week": 7, "month": 30, "quarter": 90, "year": 365}
GROUPINGS = {"day": "day", "week": "week", "month": "month"}

# Orders that count as sales in every report.
SALE_FILTER = "o.deleted_at IS NULL AND o.status <> 'cancelled'"


def period_window(period: str, start_date: Optional[date], end_date: Optional[date], today: Optional[date] = None) -> Tuple[date, date]:
    """Explicit start/end win; otherwise the period counts back from today."""
    today = today or date.today()
    if start_date and end_date:
        if start_date > end_date:
            raise HTTPException(status_code=400, detail="start_date must be on or before end_date")
        return start_date, end_date
    days = PERIOD_DAYS.get((period or "month").lower())
    if days is None:
        raise HTTPException(status_code=400, detail=f"invalid period: {period}")
    return today - timedelta(days=days), today


def margin_pct(value, cost) -> Decimal:
    cost = to_decimal(cost)
    if cost <= 0:
        return Decimal("0")
    return q_money((to_decimal(value) - cost) / cost * 100)


@router.get("/sales")
def sales_report(
    period: str = "month",
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    group_by: str = "day",
):
    start, end = period_window(period, start_date, end_date)
    bucket = GROUPINGS.get(group_by)
    if not bucket:
        raise HTTPException(status_code=400, detail=f"invalid group_by: {group_by}")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                  COUNT(*) AS total_orders,
                  COUNT(DISTINCT o.customer_id) AS unique_customers,
                  COALESCE(SUM(o.subtotal), 0) AS total_sales,
                  COALESCE(SUM(o.discount_amount), 0) AS total_discounts,
                  COALESCE(SUM(o.tax_amount), 0) AS total_tax,
                  COALESCE(SUM(o.total), 0) AS total_revenue,
                  COALESCE(AVG(o.total), 0) AS average_order_value,
                  COUNT(*) FILTER (WHERE o.status = 'completed') AS completed_orders,
                  (SELECT COUNT(*) FROM orders c
                   WHERE c.deleted_at IS NULL AND c.status = 'cancelled'
                     AND c.created_at::date BETWEEN %s AND %s) AS cancelled_orders,
                  (SELECT COALESCE(SUM(oi.quantity), 0) FROM order_items oi
                   JOIN orders o2 ON o2.id = oi.order_id
                   WHERE o2.deleted_at IS NULL AND o2.status <> 'cancelled'
                     AND o2.created_at::date BETWEEN %s AND %s) AS total_items_sold
                FROM orders o
                WHERE {SALE_FILTER} AND o.created_at::date BETWEEN %s AND %s
                """,
                (start, end, start, end, start, end),
            )
            summary = cur.fetchone()
            cur.execute(
                f"""
                SELECT date_trunc(%s, o.created_at)::date AS period,
                       COUNT(*) AS orders,
                       COALESCE(SUM(o.total), 0) AS revenue
                FROM orders o
                WHERE {SALE_FILTER} AND o.created_at::date BETWEEN %s AND %s
                GROUP BY 1
                ORDER BY 1
                """,
                (bucket, start, end),
            )
            series = cur.fetchall()
            cur.execute(
                f"""
                SELECT p.id, p.name, p.sku, c.name AS category_name,
                       SUM(oi.quantity) AS total_quantity_sold,
                       SUM(oi.total) AS total_revenue,
                       COUNT(DISTINCT o.id) AS orders_count
                FROM order_items oi
                JOIN orders o ON o.id = oi.order_id
                JOIN products p ON p.id = oi.product_id
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE {SALE_FILTER} AND o.created_at::date BETWEEN %s AND %s
                GROUP BY p.id, p.name, p.sku, c.name
                ORDER BY total_revenue DESC
                LIMIT 10
                """,
                (start, end),
            )
            top_products = cur.fetchall()
            cur.execute(
                f"""
                WITH spent AS (
                  SELECT o.customer_id, SUM(o.total) AS total_spent
                  FROM orders o
                  WHERE {SALE_FILTER} AND o.customer_id IS NOT NULL
                    AND o.created_at::date BETWEEN %s AND %s
                  GROUP BY o.customer_id
                )
                SELECT
                  (SELECT COUNT(*) FROM customers WHERE deleted_at IS NULL) AS total_customers,
                  COUNT(*) AS active_customers,
                  COALESCE(AVG(total_spent), 0) AS average_customer_value
                FROM spent
                """,
                (start, end),
            )
            customer_stats = cur.fetchone()
    return {
        "success": True,
        "data": {
            "period": period,
            "group_by": bucket,
            "date_range": {"start_date": start, "end_date": end},
            "summary": summary,
            "sales_data": series,
            "top_products": top_products,
            "customer_stats": customer_stats,
        },
    }


@router.get("/inventory")
def inventory_report():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.sku, p.stock, p.min_stock, p.price, p.cost, p.unit,
                       c.name AS category_name,
                       p.stock * p.price AS stock_value,
                       p.stock * p.cost AS stock_cost,
                       CASE
                         WHEN p.stock <= 0 THEN 'out_of_stock'
                         WHEN p.stock <= p.min_stock THEN 'low_stock'
                         ELSE 'in_stock'
                       END AS stock_status
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.deleted_at IS NULL AND p.status = 'active'
                ORDER BY stock_value DESC
                """
            )
            inventory = cur.fetchall()
            cur.execute(
                """
                SELECT movement_type AS type,
                       COUNT(*) AS movement_count,
                       SUM(ABS(quantity)) AS total_quantity,
                       AVG(ABS(quantity)) AS average_quantity
                FROM stock_movements
                WHERE created_at >= CURRENT_DATE - INTERVAL '30 days'
                GROUP BY movement_type
                ORDER BY total_quantity DESC
                """
            )
            movements = cur.fetchall()
            cur.execute(
                """
                SELECT COALESCE(c.name, 'Sin Categoría') AS category_name,
                       COALESCE(c.color, '#6B7280') AS category_color,
                       COUNT(p.id) AS products_count,
                       COALESCE(SUM(p.stock * p.price), 0) AS category_value,
                       COALESCE(SUM(p.stock * p.cost), 0) AS category_cost,
                       COUNT(*) FILTER (WHERE p.stock <= p.min_stock) AS low_stock_products
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.deleted_at IS NULL AND p.status = 'active'
                GROUP BY c.name, c.color
                ORDER BY category_value DESC
                """
            )
            categories = cur.fetchall()

    total_value = q_money(sum((to_decimal(p["stock_value"]) for p in inventory), Decimal("0")))
    total_cost = q_money(sum((to_decimal(p["stock_cost"]) for p in inventory), Decimal("0")))
    counts = {"in_stock": 0, "low_stock": 0, "out_of_stock": 0}
    for p in inventory:
        counts[p["stock_status"]] += 1
    return {
        "success": True,
        "data": {
            "summary": {
                "total_products": len(inventory),
                "total_value": total_value,
                "total_cost": total_cost,
                "profit_margin": margin_pct(total_value, total_cost),
                "in_stock_count": counts["in_stock"],
                "low_stock_count": counts["low_stock"],
                "out_of_stock_count": counts["out_of_stock"],
            },
            "inventory": inventory,
            "stock_movements": movements,
            "categories": categories,
        },
    }


@router.get("/customers")
def customers_report(period: str = "month", start_date: Optional[date] = None, end_date: Optional[date] = None):
    start, end = period_window(period, start_date, end_date)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT c.id, c.name, c.email, c.type, c.created_at,
                       COUNT(o.id) AS period_orders,
                       COALESCE(SUM(o.total), 0) AS period_spent,
                       COALESCE(AVG(o.total), 0) AS average_order_value,
                       MAX(o.created_at) AS last_order_date,
                       {customer_balance_columns("c")}
                FROM customers c
                LEFT JOIN orders o
                  ON o.customer_id = c.id AND {SALE_FILTER} AND o.created_at::date BETWEEN %s AND %s
                WHERE c.deleted_at IS NULL
                GROUP BY c.id, c.name, c.email, c.type, c.created_at
                ORDER BY period_spent DESC
                LIMIT 50
                """,
                (start, end),
            )
            customers = cur.fetchall()
            cur.execute(
                f"""
                WITH metrics AS (
                  SELECT c.id, c.type, COALESCE(SUM(o.total), 0) AS total_spent, COUNT(o.id) AS order_count
                  FROM customers c
                  LEFT JOIN orders o ON o.customer_id = c.id AND {SALE_FILTER}
                  WHERE c.deleted_at IS NULL
                  GROUP BY c.id, c.type
                )
                SELECT type,
                       COUNT(*) AS customer_count,
                       COALESCE(AVG(total_spent), 0) AS average_spent,
                       COALESCE(SUM(total_spent), 0) AS total_revenue,
                       COALESCE(AVG(order_count), 0) AS average_orders,
                       COUNT(*) FILTER (WHERE order_count = 0) AS inactive_customers
                FROM metrics
                GROUP BY type
                ORDER BY type
                """
            )
            segmentation = cur.fetchall()
            cur.execute(
                f"""
                WITH first_order AS (
                  SELECT o.customer_id, MIN(o.created_at)::date AS first_date
                  FROM orders o
                  WHERE {SALE_FILTER} AND o.customer_id IS NOT NULL
                  GROUP BY o.customer_id
                ),
                active AS (
                  SELECT DISTINCT o.customer_id
                  FROM orders o
                  WHERE {SALE_FILTER} AND o.created_at::date BETWEEN %s AND %s
                )
                SELECT
                  COUNT(*) FILTER (WHERE f.first_date >= %s) AS new_customers,
                  COUNT(*) FILTER (WHERE f.first_date < %s) AS returning_customers,
                  COUNT(*) AS total_active_customers
                FROM active a
                JOIN first_order f ON f.customer_id = a.customer_id
                """,
                (start, end, start, start),
            )
            flow = cur.fetchone()
    return {
        "success": True,
        "data": {
            "period": period,
            "date_range": {"start_date": start, "end_date": end},
            "customers": customers,
            "segmentation": segmentation,
            "customer_flow": flow,
        },
    }


@router.get("/financial")
def financial_report(period: str = "month", start_date: Optional[date] = None, end_date: Optional[date] = None):
    start, end = period_window(period, start_date, end_date)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COALESCE(SUM(o.subtotal), 0) AS total_sales,
                       COALESCE(SUM(o.discount_amount), 0) AS total_discounts,
                       COALESCE(SUM(o.tax_amount), 0) AS total_tax_collected,
                       COALESCE(SUM(o.total), 0) AS total_revenue,
                       COUNT(*) AS total_transactions,
                       COALESCE(AVG(o.total), 0) AS average_transaction_value
                FROM orders o
                WHERE {SALE_FILTER} AND o.created_at::date BETWEEN %s AND %s
                """,
                (start, end),
            )
            revenue = cur.fetchone()
            cur.execute(
                """
                SELECT payment_method,
                       COUNT(*) AS transaction_count,
                       COALESCE(SUM(amount), 0) AS total_amount,
                       COALESCE(AVG(amount), 0) AS average_amount
                FROM payments
                WHERE status = 'completed' AND payment_date::date BETWEEN %s AND %s
                GROUP BY payment_method
                ORDER BY total_amount DESC
                """,
                (start, end),
            )
            payment_methods = cur.fetchall()
            cur.execute(
                """
                SELECT COALESCE(SUM(total - paid_amount), 0) AS outstanding_amount,
                       COUNT(*) AS outstanding_invoices,
                       COALESCE(SUM(total - paid_amount) FILTER (
                         WHERE status = 'overdue' OR (due_date IS NOT NULL AND due_date < CURRENT_DATE)
                       ), 0) AS overdue_amount,
                       COUNT(*) FILTER (
                         WHERE status = 'overdue' OR (due_date IS NOT NULL AND due_date < CURRENT_DATE)
                       ) AS overdue_invoices
                FROM invoices
                WHERE status IN ('pending', 'overdue')
                """
            )
            receivables = cur.fetchone()
            cur.execute(
                f"""
                SELECT COALESCE(SUM(oi.quantity * p.cost), 0) AS cost_of_goods
                FROM order_items oi
                JOIN orders o ON o.id = oi.order_id
                JOIN products p ON p.id = oi.product_id
                WHERE {SALE_FILTER} AND o.created_at::date BETWEEN %s AND %s
                """,
                (start, end),
            )
            cogs = to_decimal(cur.fetchone()["cost_of_goods"])
    gross_profit = q_money(to_decimal(revenue["total_sales"]) - to_decimal(revenue["total_discounts"]) - cogs)
    return {
        "success": True,
        "data": {
            "period": period,
            "date_range": {"start_date": start, "end_date": end},
            "revenue": revenue,
            "cost_of_goods": q_money(cogs),
            "gross_profit": gross_profit,
            "payment_methods": payment_methods,
            "receivables": receivables,
        },
    }
