from decimal import Decimal, ROUND_HALF_UP

from fastapi import APIRouter, Depends, HTTPException

from ..db import get_conn
from ..deps import get_current_user
from ..ledger import to_decimal
from .reports import PERIOD_DAYS, SALE_FILTER, margin_pct

router = APIRouter(prefix="/dashboard", tags=["dashboard"], dependencies=[Depends(get_current_user)])


def growth_pct(current, previous) -> Decimal:
    previous = to_decimal(previous)
    if previous <= 0:
        return Decimal("0")
    pct = (to_decimal(current) - previous) / previous * 100
    return pct.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


def _clamp_limit(limit: int, default: int, ceiling: int = 50) -> int:
    limit = int(limit or default)
    return max(1, min(limit, ceiling))


@router.get("/metrics")
def metrics():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT
                  COALESCE(SUM(o.total) FILTER (WHERE o.created_at::date = CURRENT_DATE), 0) AS today_sales,
                  COALESCE(SUM(o.total) FILTER (WHERE o.created_at::date = CURRENT_DATE - 1), 0) AS yesterday_sales,
                  COALESCE(SUM(o.total) FILTER (WHERE o.created_at >= date_trunc('month', CURRENT_DATE)), 0) AS month_sales,
                  COALESCE(SUM(o.total) FILTER (
                    WHERE o.created_at >= date_trunc('month', CURRENT_DATE) - INTERVAL '1 month'
                      AND o.created_at < date_trunc('month', CURRENT_DATE)
                  ), 0) AS last_month_sales,
                  COUNT(*) FILTER (WHERE o.status = 'pending') AS pending_orders,
                  COUNT(*) FILTER (WHERE o.created_at::date = CURRENT_DATE) AS today_orders
                FROM orders o
                WHERE {SALE_FILTER}
                """
            )
            sales = cur.fetchone()
            cur.execute(
                """
                SELECT
                  COALESCE(SUM(stock * price), 0) AS inventory_value,
                  COALESCE(SUM(stock * cost), 0) AS inventory_cost,
                  COUNT(*) FILTER (WHERE stock <= min_stock) AS low_stock_count,
                  COUNT(*) FILTER (WHERE stock = 0) AS out_of_stock_count,
                  COUNT(*) AS total_products
                FROM products
                WHERE deleted_at IS NULL AND status = 'active'
                """
            )
            inv = cur.fetchone()
            cur.execute(
                """
                SELECT COUNT(*) AS total_customers,
                       COUNT(*) FILTER (WHERE created_at >= CURRENT_DATE - INTERVAL '30 days') AS new_customers_month
                FROM customers
                WHERE deleted_at IS NULL
                """
            )
            cust = cur.fetchone()
            cur.execute(
                """
                SELECT COALESCE(SUM(amount), 0) AS collected_today
                FROM payments
                WHERE status = 'completed' AND payment_date::date = CURRENT_DATE
                """
            )
            collected_today = cur.fetchone()["collected_today"]
    return {
        "success": True,
        "data": {
            "sales": {
                "today": sales["today_sales"],
                "yesterday": sales["yesterday_sales"],
                "month": sales["month_sales"],
                "last_month": sales["last_month_sales"],
                "daily_growth": growth_pct(sales["today_sales"], sales["yesterday_sales"]),
                "monthly_growth": growth_pct(sales["month_sales"], sales["last_month_sales"]),
                "collected_today": collected_today,
            },
            "orders": {"pending": sales["pending_orders"], "today": sales["today_orders"]},
            "inventory": {
                "total_value": inv["inventory_value"],
                "total_cost": inv["inventory_cost"],
                "low_stock_products": inv["low_stock_count"],
                "out_of_stock_products": inv["out_of_stock_count"],
                "total_products": inv["total_products"],
                "profit_margin": margin_pct(inv["inventory_value"], inv["inventory_cost"]),
            },
            "customers": {"total": cust["total_customers"], "new_this_month": cust["new_customers_month"]},
        },
    }


@router.get("/sales-chart")
def sales_chart(period: str = "week"):
    days = PERIOD_DAYS.get((period or "").lower())
    if days is None:
        raise HTTPException(status_code=400, detail=f"invalid period: {period}")
    with get_conn() as conn:
        with conn.cursor() as cur:
            # Every day of the window appears, including days without sales.
            cur.execute(
                f"""
                WITH days AS (
                  SELECT generate_series(CURRENT_DATE - %s::int + 1, CURRENT_DATE, INTERVAL '1 day')::date AS date
                )
                SELECT d.date,
                       COUNT(o.id) AS orders,
                       COALESCE(SUM(o.total), 0) AS sales
                FROM days d
                LEFT JOIN orders o ON o.created_at::date = d.date AND {SALE_FILTER}
                GROUP BY d.date
                ORDER BY d.date
                """,
                (days,),
            )
            return {"success": True, "data": {"period": period, "series": cur.fetchall()}}


@router.get("/top-products")
def top_products(limit: int = 5, period: str = "month"):
    days = PERIOD_DAYS.get((period or "").lower())
    if days is None:
        raise HTTPException(status_code=400, detail=f"invalid period: {period}")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT p.id, p.name, p.sku, p.stock, p.unit,
                       SUM(oi.quantity) AS quantity_sold,
                       SUM(oi.total) AS revenue
                FROM order_items oi
                JOIN orders o ON o.id = oi.order_id
                JOIN products p ON p.id = oi.product_id
                WHERE {SALE_FILTER} AND o.created_at >= CURRENT_DATE - %s::int
                GROUP BY p.id, p.name, p.sku, p.stock, p.unit
                ORDER BY revenue DESC
                LIMIT %s
                """,
                (days, _clamp_limit(limit, 5)),
            )
            return {"success": True, "data": cur.fetchall()}


@router.get("/recent-orders")
def recent_orders(limit: int = 10):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT o.id, o.order_number, o.total, o.status, o.payment_status, o.created_at,
                       c.name AS customer_name,
                       (SELECT COUNT(*) FROM order_items oi WHERE oi.order_id = o.id) AS items_count
                FROM orders o
                LEFT JOIN customers c ON c.id = o.customer_id
                WHERE o.deleted_at IS NULL
                ORDER BY o.created_at DESC
                LIMIT %s
                """,
                (_clamp_limit(limit, 10),),
            )
            return {"success": True, "data": cur.fetchall()}


@router.get("/low-stock")
def low_stock(limit: int = 10):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.sku, p.stock, p.min_stock, p.unit, c.name AS category_name
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.deleted_at IS NULL AND p.status = 'active' AND p.stock <= p.min_stock
                ORDER BY (p.stock - p.min_stock) ASC, p.name
                LIMIT %s
                """,
                (_clamp_limit(limit, 10),),
            )
            return {"success": True, "data": cur.fetchall()}


@router.get("/category-sales")
def category_sales(period: str = "month"):
    days = PERIOD_DAYS.get((period or "").lower())
    if days is None:
        raise HTTPException(status_code=400, detail=f"invalid period: {period}")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COALESCE(c.name, 'Sin Categoría') AS category_name,
                       COALESCE(c.color, '#6B7280') AS color,
                       SUM(oi.quantity) AS quantity_sold,
                       SUM(oi.total) AS revenue
                FROM order_items oi
                JOIN orders o ON o.id = oi.order_id
                JOIN products p ON p.id = oi.product_id
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE {SALE_FILTER} AND o.created_at >= CURRENT_DATE - %s::int
                GROUP BY c.name, c.color
                ORDER BY revenue DESC
                """,
                (days,),
            )
            return {"success": True, "data": cur.fetchall()}
