import re
import unicodedata
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..db import get_conn
from ..deps import MANAGERS, get_current_user, require_role
from ..validation import HexColor

router = APIRouter(prefix="/categories", tags=["categories"])

DEFAULT_COLOR = "#10B981"


class CategoryIn(BaseModel):
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    color: HexColor = DEFAULT_COLOR


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    color: Optional[HexColor] = None


def slugify(value: str) -> str:
    # "Frutas Cítricas" -> "frutas-citricas"
    value = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value).strip("-").lower()
    return value


def _assert_slug_free(cur, slug: str, exclude_id: Optional[str] = None):
    cur.execute(
        "SELECT 1 FROM categories WHERE slug = %s AND (%s::uuid IS NULL OR id <> %s::uuid)",
        (slug, exclude_id, exclude_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="category slug already exists")


@router.get("", dependencies=[Depends(get_current_user)])
def list_categories():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.*, COUNT(p.id) AS product_count
                FROM categories c
                LEFT JOIN products p ON p.category_id = c.id AND p.deleted_at IS NULL
                GROUP BY c.id
                ORDER BY c.name
                """
            )
            return {"success": True, "data": cur.fetchall()}


@router.get("/{category_id}", dependencies=[Depends(get_current_user)])
def get_category(category_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.*,
                       (SELECT COUNT(*) FROM products p WHERE p.category_id = c.id AND p.deleted_at IS NULL) AS product_count
                FROM categories c
                WHERE c.id = %s
                """,
                (category_id,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="category not found")
            return {"success": True, "data": row}


@router.post("", status_code=201, dependencies=[Depends(require_role(*MANAGERS))])
def create_category(data: CategoryIn):
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    slug = slugify(data.slug or name)
    if not slug:
        raise HTTPException(status_code=400, detail="slug is required")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_slug_free(cur, slug)
                cur.execute(
                    """
                    INSERT INTO categories (id, name, slug, description, color)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, slug, (data.description or "").strip() or None, data.color),
                )
                return {"success": True, "data": cur.fetchone(), "message": "category created"}


@router.put("/{category_id}", dependencies=[Depends(require_role(*MANAGERS))])
def update_category(category_id: str, data: CategoryUpdate):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")
    if "name" in patch and not (patch["name"] or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    if "slug" in patch:
        patch["slug"] = slugify(patch["slug"] or "")
        if not patch["slug"]:
            raise HTTPException(status_code=400, detail="slug is required")
    if "color" in patch and patch["color"] is None:
        patch["color"] = DEFAULT_COLOR

    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v.strip() if isinstance(v, str) else v)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if "slug" in patch:
                    _assert_slug_free(cur, patch["slug"], exclude_id=category_id)
                cur.execute(
                    f"""
                    UPDATE categories
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (*params, category_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="category not found")
                return {"success": True, "data": row, "message": "category updated"}


@router.delete("/{category_id}", dependencies=[Depends(require_role(*MANAGERS))])
def delete_category(category_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS n FROM products WHERE category_id = %s AND deleted_at IS NULL",
                    (category_id,),
                )
                n = cur.fetchone()["n"]
                if n:
                    raise HTTPException(status_code=409, detail=f"category is used by {n} product(s)")
                cur.execute("DELETE FROM categories WHERE id = %s RETURNING id", (category_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="category not found")
                return {"success": True, "message": "category deleted"}
