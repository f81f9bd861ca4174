from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..db import get_conn
from ..deps import MANAGERS, get_current_user, require_role
from ..validation import UnitType

router = APIRouter(prefix="/units", tags=["units"])


class UnitIn(BaseModel):
    name: str
    symbol: str
    type: UnitType = "unit"
    description: Optional[str] = None


class UnitUpdate(BaseModel):
    name: Optional[str] = None
    symbol: Optional[str] = None
    type: Optional[UnitType] = None
    description: Optional[str] = None


def _products_using(cur, symbol: str) -> int:
    cur.execute(
        "SELECT COUNT(*) AS n FROM products WHERE unit = %s AND deleted_at IS NULL",
        (symbol,),
    )
    return int(cur.fetchone()["n"] or 0)


def _assert_symbol_free(cur, symbol: str, exclude_id: Optional[str] = None):
    cur.execute(
        """
        SELECT 1 FROM units
        WHERE symbol = %s AND deleted_at IS NULL AND (%s::uuid IS NULL OR id <> %s::uuid)
        """,
        (symbol, exclude_id, exclude_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="unit symbol already exists")


@router.get("", dependencies=[Depends(get_current_user)])
def list_units(type: Optional[UnitType] = None, search: str = ""):
    search = (search or "").strip()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT u.*,
                       (SELECT COUNT(*) FROM products p WHERE p.unit = u.symbol AND p.deleted_at IS NULL) AS product_count
                FROM units u
                WHERE u.deleted_at IS NULL
                  AND (%s::text IS NULL OR u.type = %s)
                  AND (%s = '' OR u.name ILIKE %s OR u.symbol ILIKE %s)
                ORDER BY u.type, u.name
                """,
                (type, type, search, f"%{search}%", f"%{search}%"),
            )
            return {"success": True, "data": cur.fetchall()}


@router.get("/stats/summary", dependencies=[Depends(get_current_user)])
def units_stats():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) AS total FROM units WHERE deleted_at IS NULL")
            total_units = cur.fetchone()["total"]
            cur.execute(
                """
                SELECT u.symbol, COUNT(p.id) AS product_count
                FROM units u
                JOIN products p ON p.unit = u.symbol AND p.deleted_at IS NULL
                WHERE u.deleted_at IS NULL
                GROUP BY u.symbol
                ORDER BY product_count DESC
                """
            )
            usage = cur.fetchall()
            cur.execute("SELECT COUNT(*) AS total FROM products WHERE deleted_at IS NULL")
            return {
                "success": True,
                "data": {
                    "total_units": total_units,
                    "units_in_use": len(usage),
                    "total_products": cur.fetchone()["total"],
                    "usage_by_unit": usage,
                },
            }


@router.get("/symbol/{symbol}", dependencies=[Depends(get_current_user)])
def get_unit_by_symbol(symbol: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM units WHERE symbol = %s AND deleted_at IS NULL", (symbol,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="unit not found")
            return {"success": True, "data": row}


@router.get("/usage/{symbol}", dependencies=[Depends(get_current_user)])
def unit_usage(symbol: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            count = _products_using(cur, symbol)
            return {"success": True, "data": {"symbol": symbol, "product_count": count, "in_use": count > 0}}


@router.get("/{unit_id}", dependencies=[Depends(get_current_user)])
def get_unit(unit_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM units WHERE id = %s AND deleted_at IS NULL", (unit_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="unit not found")
            return {"success": True, "data": row}


@router.post("", status_code=201, dependencies=[Depends(require_role(*MANAGERS))])
def create_unit(data: UnitIn):
    name = data.name.strip()
    symbol = data.symbol.strip()
    if not name or not symbol:
        raise HTTPException(status_code=400, detail="name and symbol are required")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_symbol_free(cur, symbol)
                cur.execute(
                    """
                    INSERT INTO units (id, name, symbol, type, description)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, symbol, data.type, (data.description or "").strip() or None),
                )
                return {"success": True, "data": cur.fetchone(), "message": "unit created"}


@router.put("/{unit_id}", dependencies=[Depends(require_role(*MANAGERS))])
def update_unit(unit_id: str, data: UnitUpdate):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")
    for k in ("name", "symbol", "type"):
        if k in patch and not (patch[k] or "").strip():
            raise HTTPException(status_code=400, detail=f"{k} is required")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, symbol FROM units WHERE id = %s AND deleted_at IS NULL FOR UPDATE", (unit_id,))
                unit = cur.fetchone()
                if not unit:
                    raise HTTPException(status_code=404, detail="unit not found")
                if "symbol" in patch:
                    patch["symbol"] = patch["symbol"].strip()
                    if patch["symbol"] != unit["symbol"]:
                        _assert_symbol_free(cur, patch["symbol"], exclude_id=unit_id)
                        # Products reference units by symbol.
                        if _products_using(cur, unit["symbol"]):
                            raise HTTPException(status_code=409, detail="cannot change the symbol of a unit used by products")

                fields = []
                params = []
                for k, v in patch.items():
                    fields.append(f"{k} = %s")
                    params.append(v.strip() or None if isinstance(v, str) and k == "description" else v)
                cur.execute(
                    f"""
                    UPDATE units
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (*params, unit_id),
                )
                return {"success": True, "data": cur.fetchone(), "message": "unit updated"}


@router.delete("/{unit_id}", dependencies=[Depends(require_role(*MANAGERS))])
def delete_unit(unit_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, symbol FROM units WHERE id = %s AND deleted_at IS NULL FOR UPDATE", (unit_id,))
                unit = cur.fetchone()
                if not unit:
                    raise HTTPException(status_code=404, detail="unit not found")
                n = _products_using(cur, unit["symbol"])
                if n:
                    raise HTTPException(status_code=409, detail=f"unit is used by {n} product(s)")
                cur.execute("UPDATE units SET deleted_at = now(), updated_at = now() WHERE id = %s", (unit_id,))
                return {"success": True, "message": "unit deleted"}
