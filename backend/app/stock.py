from decimal import Decimal
from typing import Optional

from fastapi import HTTPException


def take_stock(cur, product_id, quantity: Decimal):
    """
    Atomically decrement stock. The conditional UPDATE is the availability
    check, so two concurrent sales can never both consume the last units.
    """
    cur.execute(
        """
        UPDATE products
        SET stock = stock - %s, updated_at = now()
        WHERE id = %s AND deleted_at IS NULL AND stock >= %s
        RETURNING id, name, sku, stock, supplier_id
        """,
        (quantity, product_id, quantity),
    )
    row = cur.fetchone()
    if row:
        return row
    cur.execute(
        "SELECT id, name, stock FROM products WHERE id = %s AND deleted_at IS NULL",
        (product_id,),
    )
    product = cur.fetchone()
    if not product:
        raise HTTPException(status_code=404, detail=f"product not found: {product_id}")
    raise HTTPException(
        status_code=400,
        detail={
            "error": f"insufficient stock for {product['name']}",
            "product_id": str(product["id"]),
            "available": str(product["stock"]),
            "requested": str(quantity),
        },
    )


def put_stock(cur, product_id, quantity: Decimal):
    cur.execute(
        """
        UPDATE products
        SET stock = stock + %s, updated_at = now()
        WHERE id = %s
        RETURNING id, name, stock
        """,
        (quantity, product_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"product not found: {product_id}")
    return row


def record_movement(
    cur,
    product_id,
    movement_type: str,
    quantity: Decimal,
    reference_type: Optional[str] = None,
    reference_id=None,
    notes: Optional[str] = None,
    user_id=None,
):
    cur.execute(
        """
        INSERT INTO stock_movements
          (id, product_id, movement_type, quantity, reference_type, reference_id, notes, user_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
        """,
        (product_id, movement_type, quantity, reference_type, reference_id, notes, user_id),
    )
