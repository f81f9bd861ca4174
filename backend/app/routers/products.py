from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..db import get_conn
from ..deps import MANAGERS, get_current_user, require_role
from ..ledger import signed_stock_delta, to_decimal
from ..listing import order_clause, page_window, pagination
from ..stock import record_movement
from ..validation import MovementType, ProductStatus, Sku

router = APIRouter(prefix="/products", tags=["products"])

SORTABLE = {
    "name": "p.name",
    "sku": "p.sku",
    "price": "p.price",
    "stock": "p.stock",
    "created_at": "p.created_at",
    "category": "c.name",
}


class ProductIn(BaseModel):
    name: str
    sku: Sku
    description: Optional[str] = None
    category_id: Optional[str] = None
    supplier_id: Optional[str] = None
    price: Decimal
    cost: Decimal = Decimal("0")
    stock: Decimal = Decimal("0")
    min_stock: Decimal = Decimal("0")
    unit: str = "kg"
    expiry_date: Optional[date] = None
    image_url: Optional[str] = None
    status: ProductStatus = "active"


class ProductUpdate(BaseModel):
    # Stock is changed only through PATCH /products/{id}/stock, which records a movement.
    name: Optional[str] = None
    sku: Optional[Sku] = None
    description: Optional[str] = None
    category_id: Optional[str] = None
    supplier_id: Optional[str] = None
    price: Optional[Decimal] = None
    cost: Optional[Decimal] = None
    min_stock: Optional[Decimal] = None
    unit: Optional[str] = None
    expiry_date: Optional[date] = None
    image_url: Optional[str] = None
    status: Optional[ProductStatus] = None


class StockAdjustIn(BaseModel):
    quantity: Decimal
    type: MovementType = "adjustment"
    notes: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None


def _assert_prices(price, cost):
    if price is not None and price < 0:
        raise HTTPException(status_code=400, detail="price must be >= 0")
    if cost is not None and cost < 0:
        raise HTTPException(status_code=400, detail="cost must be >= 0")


def _assert_unit_exists(cur, symbol: str):
    cur.execute("SELECT 1 FROM units WHERE symbol = %s AND deleted_at IS NULL", (symbol,))
    if not cur.fetchone():
        raise HTTPException(status_code=400, detail=f"unknown unit: {symbol}")


def _assert_sku_free(cur, sku: str, exclude_id: Optional[str] = None):
    cur.execute(
        """
        SELECT 1 FROM products
        WHERE sku = %s AND deleted_at IS NULL AND (%s::uuid IS NULL OR id <> %s::uuid)
        """,
        (sku, exclude_id, exclude_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="sku already exists")


@router.get("", dependencies=[Depends(get_current_user)])
def list_products(
    search: str = "",
    category_id: Optional[str] = None,
    supplier_id: Optional[str] = None,
    status: Optional[ProductStatus] = None,
    low_stock: bool = False,
    page: int = 1,
    limit: int = 0,
    sort_by: str = "name",
    sort_order: str = "ASC",
):
    page, limit, offset = page_window(page, limit)
    where = ["p.deleted_at IS NULL"]
    params: list = []
    search = (search or "").strip()
    if search:
        where.append("(p.name ILIKE %s OR p.sku ILIKE %s OR p.description ILIKE %s)")
        params.extend([f"%{search}%"] * 3)
    if category_id:
        where.append("p.category_id = %s")
        params.append(category_id)
    if supplier_id:
        where.append("p.supplier_id = %s")
        params.append(supplier_id)
    if status:
        where.append("p.status = %s")
        params.append(status)
    if low_stock:
        where.append("p.stock <= p.min_stock")
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT p.*, c.name AS category_name, c.color AS category_color, s.name AS supplier_name,
                       (p.stock <= p.min_stock) AS is_low_stock
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                LEFT JOIN suppliers s ON s.id = p.supplier_id
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "name")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM products p WHERE {where_sql}", tuple(params))
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.get("/stats", dependencies=[Depends(get_current_user)])
def inventory_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT
                  COUNT(*) AS total_products,
                  COUNT(*) FILTER (WHERE status = 'active') AS active_products,
                  COUNT(*) FILTER (WHERE stock <= min_stock) AS low_stock_products,
                  COUNT(*) FILTER (WHERE stock = 0) AS out_of_stock_products,
                  COALESCE(SUM(stock * price), 0) AS inventory_value,
                  COALESCE(SUM(stock * cost), 0) AS inventory_cost,
                  COUNT(*) FILTER (WHERE expiry_date IS NOT NULL AND expiry_date <= CURRENT_DATE + 7) AS expiring_soon
                FROM products
                WHERE deleted_at IS NULL
                """
            )
            return {"success": True, "data": cur.fetchone()}


@router.get("/low-stock", dependencies=[Depends(get_current_user)])
def low_stock_products(limit: int = 50):
    limit = max(1, min(int(limit or 50), 200))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, p.sku, p.stock, p.min_stock, p.unit, c.name AS category_name,
                       s.name AS supplier_name, (p.min_stock - p.stock) AS shortage
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                LEFT JOIN suppliers s ON s.id = p.supplier_id
                WHERE p.deleted_at IS NULL AND p.status = 'active' AND p.stock <= p.min_stock
                ORDER BY (p.stock / NULLIF(p.min_stock, 0)) ASC NULLS FIRST, p.name
                LIMIT %s
                """,
                (limit,),
            )
            return {"success": True, "data": cur.fetchall()}


@router.get("/{product_id}", dependencies=[Depends(get_current_user)])
def get_product(product_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.*, c.name AS category_name, s.name AS supplier_name, u.name AS unit_name
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                LEFT JOIN suppliers s ON s.id = p.supplier_id
                LEFT JOIN units u ON u.symbol = p.unit AND u.deleted_at IS NULL
                WHERE p.id = %s AND p.deleted_at IS NULL
                """,
                (product_id,),
            )
            product = cur.fetchone()
            if not product:
                raise HTTPException(status_code=404, detail="product not found")
            cur.execute(
                """
                SELECT id, movement_type, quantity, reference_type, reference_id, notes, created_at
                FROM stock_movements
                WHERE product_id = %s
                ORDER BY created_at DESC
                LIMIT 10
                """,
                (product_id,),
            )
            return {"success": True, "data": {**product, "recent_movements": cur.fetchall()}}


@router.get("/{product_id}/movements", dependencies=[Depends(get_current_user)])
def product_movements(
    product_id: str,
    movement_type: Optional[MovementType] = None,
    page: int = 1,
    limit: int = 0,
):
    page, limit, offset = page_window(page, limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1 FROM products WHERE id = %s", (product_id,))
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="product not found")
            cur.execute(
                """
                SELECT m.*, u.full_name AS user_name
                FROM stock_movements m
                LEFT JOIN users u ON u.id = m.user_id
                WHERE m.product_id = %s AND (%s::text IS NULL OR m.movement_type = %s)
                ORDER BY m.created_at DESC
                LIMIT %s OFFSET %s
                """,
                (product_id, movement_type, movement_type, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(
                """
                SELECT COUNT(*) AS total FROM stock_movements
                WHERE product_id = %s AND (%s::text IS NULL OR movement_type = %s)
                """,
                (product_id, movement_type, movement_type),
            )
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.post("", status_code=201)
def create_product(data: ProductIn, user=Depends(require_role(*MANAGERS))):
    _assert_prices(data.price, data.cost)
    if data.stock < 0 or data.min_stock < 0:
        raise HTTPException(status_code=400, detail="stock and min_stock must be >= 0")
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_sku_free(cur, data.sku)
                _assert_unit_exists(cur, data.unit)
                cur.execute(
                    """
                    INSERT INTO products
                      (id, name, description, sku, category_id, supplier_id, price, cost, stock, min_stock,
                       unit, expiry_date, image_url, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        name,
                        (data.description or "").strip() or None,
                        data.sku,
                        data.category_id,
                        data.supplier_id,
                        data.price,
                        data.cost,
                        data.stock,
                        data.min_stock,
                        data.unit,
                        data.expiry_date,
                        (data.image_url or "").strip() or None,
                        data.status,
                    ),
                )
                product = cur.fetchone()
                if data.stock > 0:
                    record_movement(cur, product["id"], "adjustment", data.stock, notes="Initial stock", user_id=user["user_id"])
                return {"success": True, "data": product, "message": "product created"}


@router.put("/{product_id}")
def update_product(product_id: str, data: ProductUpdate, user=Depends(require_role(*MANAGERS))):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")
    _assert_prices(patch.get("price"), patch.get("cost"))
    if patch.get("min_stock") is not None and patch["min_stock"] < 0:
        raise HTTPException(status_code=400, detail="min_stock must be >= 0")

    fields = []
    params = []
    for k, v in patch.items():
        if k in {"name", "sku", "unit", "price", "status"} and v is None:
            raise HTTPException(status_code=400, detail=f"{k} cannot be null")
        fields.append(f"{k} = %s")
        if k in {"description", "image_url"} and isinstance(v, str):
            params.append(v.strip() or None)
        else:
            params.append(v)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if "sku" in patch:
                    _assert_sku_free(cur, patch["sku"], exclude_id=product_id)
                if "unit" in patch:
                    _assert_unit_exists(cur, patch["unit"])
                cur.execute(
                    f"""
                    UPDATE products
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING *
                    """,
                    (*params, product_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="product not found")
                return {"success": True, "data": row, "message": "product updated"}


@router.patch("/{product_id}/stock")
def adjust_stock(product_id: str, data: StockAdjustIn, user=Depends(require_role(*MANAGERS))):
    delta = signed_stock_delta(data.type, data.quantity)
    if delta == 0:
        raise HTTPException(status_code=400, detail="quantity must be non-zero")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name, stock FROM products WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                    (product_id,),
                )
                product = cur.fetchone()
                if not product:
                    raise HTTPException(status_code=404, detail="product not found")
                new_stock = to_decimal(product["stock"]) + delta
                if new_stock < 0:
                    raise HTTPException(
                        status_code=400,
                        detail={
                            "error": f"insufficient stock for {product['name']}",
                            "available": str(product["stock"]),
                            "requested": str(abs(delta)),
                        },
                    )
                cur.execute(
                    "UPDATE products SET stock = %s, updated_at = now() WHERE id = %s RETURNING *",
                    (new_stock, product_id),
                )
                updated = cur.fetchone()
                # Direction lives in the movement type; only adjustments keep a sign.
                record_movement(
                    cur,
                    product_id,
                    data.type,
                    delta if data.type == "adjustment" else abs(delta),
                    reference_type=data.reference_type,
                    reference_id=data.reference_id,
                    notes=(data.notes or "").strip() or None,
                    user_id=user["user_id"],
                )
                audit(cur, user["user_id"], "stock_adjusted", "products", product_id, {"type": data.type, "delta": delta})
                return {
                    "success": True,
                    "data": {**updated, "previous_stock": product["stock"], "adjustment": delta},
                    "message": "stock updated",
                }


@router.delete("/{product_id}")
def delete_product(product_id: str, user=Depends(require_role(*MANAGERS))):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name FROM products WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                    (product_id,),
                )
                product = cur.fetchone()
                if not product:
                    raise HTTPException(status_code=404, detail="product not found")
                cur.execute(
                    """
                    SELECT COUNT(*) AS n
                    FROM order_items oi
                    JOIN orders o ON o.id = oi.order_id
                    WHERE oi.product_id = %s AND o.deleted_at IS NULL AND o.status IN ('pending', 'processing')
                    """,
                    (product_id,),
                )
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=409, detail="product has open orders")
                cur.execute("UPDATE products SET deleted_at = now(), updated_at = now() WHERE id = %s", (product_id,))
                audit(cur, user["user_id"], "product_deleted", "products", product_id, {"name": product["name"]})
                return {"success": True, "message": "product deleted"}
