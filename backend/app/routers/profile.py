from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..db import get_conn
from ..deps import get_current_user
from ..listing import page_window, pagination
from ..validation import Email, Language

router = APIRouter(prefix="/profile", tags=["profile"])

DEFAULT_PREFERENCES = {
    "email_notifications": True,
    "push_notifications": True,
    "dark_mode": False,
    "language": "es",
    "timezone": "America/Lima",
}


class ProfileIn(BaseModel):
    full_name: str
    email: Email
    avatar: Optional[str] = None


class PreferencesIn(BaseModel):
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    dark_mode: Optional[bool] = None
    language: Optional[Language] = None
    timezone: Optional[str] = None


def with_defaults(row) -> dict:
    row = row or {}
    return {k: (row.get(k) if row.get(k) is not None else v) for k, v in DEFAULT_PREFERENCES.items()}


@router.get("")
def get_profile(user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT u.id, u.full_name, u.email, u.role, u.avatar, u.created_at, u.last_login_at,
                       up.email_notifications, up.push_notifications, up.dark_mode, up.language, up.timezone
                FROM users u
                LEFT JOIN user_preferences up ON up.user_id = u.id
                WHERE u.id = %s AND u.deleted_at IS NULL
                """,
                (user["user_id"],),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
    profile = {k: row[k] for k in ("id", "full_name", "email", "role", "avatar", "created_at", "last_login_at")}
    return {"success": True, "data": {**profile, "preferences": with_defaults(row)}}


@router.put("")
def update_profile(data: ProfileIn, user=Depends(get_current_user)):
    full_name = data.full_name.strip()
    if not full_name:
        raise HTTPException(status_code=400, detail="full_name is required")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM users WHERE email = %s AND id <> %s", (data.email, user["user_id"]))
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="email already in use")
                cur.execute(
                    """
                    UPDATE users
                    SET full_name = %s, email = %s, avatar = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id, full_name, email, role, avatar, created_at, last_login_at
                    """,
                    (full_name, data.email, (data.avatar or "").strip() or None, user["user_id"]),
                )
                row = cur.fetchone()
                audit(cur, user["user_id"], "profile_updated", "users", user["user_id"], {"email": data.email})
                return {"success": True, "data": row, "message": "profile updated"}


@router.put("/preferences")
def update_preferences(data: PreferencesIn, user=Depends(get_current_user)):
    timezone = (data.timezone or "").strip() or None
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                # Unset fields keep their stored value, or the default for a first save.
                cur.execute(
                    """
                    INSERT INTO user_preferences
                      (user_id, email_notifications, push_notifications, dark_mode, language, timezone)
                    VALUES (%s, COALESCE(%s, true), COALESCE(%s, true), COALESCE(%s, false),
                            COALESCE(%s, 'es'), COALESCE(%s, 'America/Lima'))
                    ON CONFLICT (user_id) DO UPDATE SET
                      email_notifications = COALESCE(%s, user_preferences.email_notifications),
                      push_notifications = COALESCE(%s, user_preferences.push_notifications),
                      dark_mode = COALESCE(%s, user_preferences.dark_mode),
                      language = COALESCE(%s, user_preferences.language),
                      timezone = COALESCE(%s, user_preferences.timezone),
                      updated_at = now()
                    RETURNING email_notifications, push_notifications, dark_mode, language, timezone
                    """,
                    (
                        user["user_id"],
                        *([data.email_notifications, data.push_notifications, data.dark_mode, data.language, timezone] * 2),
                    ),
                )
                row = cur.fetchone()
    return {"success": True, "data": with_defaults(row), "message": "preferences updated"}


@router.get("/activity")
def activity(page: int = 1, limit: int = 0, user=Depends(get_current_user)):
    page, limit, offset = page_window(page, limit)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, action, entity_type, entity_id, details, created_at
                FROM audit_logs
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (user["user_id"], limit, offset),
            )
            rows = cur.fetchall()
            cur.execute("SELECT COUNT(*) AS total FROM audit_logs WHERE user_id = %s", (user["user_id"],))
            total = cur.fetchone()["total"]
    return {"success": True, "data": rows, "pagination": pagination(total, page, limit)}
