from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from ..audit import audit
from ..db import get_conn
from ..deps import MANAGERS, require_role
from ..listing import order_clause, page_window, pagination
from ..validation import Email, UserRole

router = APIRouter(prefix="/users", tags=["users"])

USER_COLUMNS = "id, email, full_name, role, avatar, is_active, last_login_at, created_at, updated_at"

SORTABLE = {
    "full_name": "full_name",
    "email": "email",
    "role": "role",
    "created_at": "created_at",
    "last_login_at": "last_login_at",
}


class UserUpdateIn(BaseModel):
    full_name: Optional[str] = None
    email: Optional[Email] = None
    avatar: Optional[str] = None
    is_active: Optional[bool] = None


class RoleIn(BaseModel):
    role: UserRole


@router.get("", dependencies=[Depends(require_role(*MANAGERS))])
def list_users(
    search: str = "",
    role: Optional[UserRole] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 0,
    sort_by: str = "created_at",
    sort_order: str = "DESC",
):
    page, limit, offset = page_window(page, limit)
    where = ["deleted_at IS NULL"]
    params: list = []
    search = (search or "").strip()
    if search:
        where.append("(full_name ILIKE %s OR email ILIKE %s)")
        params.extend([f"%{search}%", f"%{search}%"])
    if role:
        where.append("role = %s")
        params.append(role)
    if is_active is not None:
        where.append("is_active = %s")
        params.append(is_active)
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {USER_COLUMNS}
                FROM users
                WHERE {where_sql}
                ORDER BY {order_clause(sort_by, sort_order, SORTABLE, "created_at")}
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM users WHERE {where_sql}", tuple(params))
            total = cur.fetchone()["total"]
            return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}


@router.put("/{user_id}")
def update_user(user_id: str, data: UserUpdateIn, user=Depends(require_role("admin"))):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="no fields to update")
    if "full_name" in patch and not (patch["full_name"] or "").strip():
        raise HTTPException(status_code=400, detail="full_name is required")
    if patch.get("is_active") is False and str(user_id) == str(user["user_id"]):
        raise HTTPException(status_code=400, detail="cannot deactivate your own account")

    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append((v.strip() or None) if isinstance(v, str) else v)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if patch.get("email"):
                    cur.execute("SELECT 1 FROM users WHERE email = %s AND id <> %s", (patch["email"], user_id))
                    if cur.fetchone():
                        raise HTTPException(status_code=409, detail="email already registered")
                cur.execute(
                    f"""
                    UPDATE users
                    SET {", ".join(fields)}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING {USER_COLUMNS}
                    """,
                    (*params, user_id),
                )
                updated = cur.fetchone()
                if not updated:
                    raise HTTPException(status_code=404, detail="user not found")
                if patch.get("is_active") is False:
                    cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                audit(cur, user["user_id"], "user_updated", "users", user_id, patch)
                return {"success": True, "data": updated, "message": "user updated"}


@router.patch("/{user_id}/role")
def change_role(user_id: str, data: RoleIn, user=Depends(require_role("admin"))):
    if str(user_id) == str(user["user_id"]):
        raise HTTPException(status_code=400, detail="cannot change your own role")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT role FROM users WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                    (user_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="user not found")
                cur.execute(
                    f"UPDATE users SET role = %s, updated_at = now() WHERE id = %s RETURNING {USER_COLUMNS}",
                    (data.role, user_id),
                )
                updated = cur.fetchone()
                audit(cur, user["user_id"], "user_role_changed", "users", user_id, {"from": row["role"], "to": data.role})
                return {"success": True, "data": updated, "message": "role updated"}


@router.delete("/{user_id}")
def delete_user(user_id: str, user=Depends(require_role("admin"))):
    if str(user_id) == str(user["user_id"]):
        raise HTTPException(status_code=400, detail="cannot delete your own account")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE users
                    SET deleted_at = now(), is_active = false, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING email
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="user not found")
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                audit(cur, user["user_id"], "user_deleted", "users", user_id, {"email": row["email"]})
                return {"success": True, "message": "user deleted"}
