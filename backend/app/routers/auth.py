from fastapi import APIRouter, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
import secrets
from ..audit import audit
from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, get_session, require_role, SESSION_COOKIE_NAME
from ..logs import json_log
from ..security import hash_password, verify_password, needs_rehash, hash_session_token
from ..validation import Email, UserRole

router = APIRouter(prefix="/auth", tags=["auth"])
MIN_PASSWORD_LENGTH = 6


class LoginIn(BaseModel):
    email: Email
    password: str


class RegisterIn(BaseModel):
    email: Email
    password: str
    full_name: str
    role: UserRole = "user"


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


def _assert_password_strength(password: str):
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"password must be at least {MIN_PASSWORD_LENGTH} characters")


def _session_cookie(resp: JSONResponse, token: str):
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=not settings.debug_errors,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )


@router.post("/login")
def login(data: LoginIn, request: Request):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, email, full_name, role, avatar, hashed_password, is_active
                    FROM users
                    WHERE email = %s AND deleted_at IS NULL
                    """,
                    (data.email,),
                )
                user = cur.fetchone()
                if not user or not user["is_active"] or not verify_password(data.password, user["hashed_password"]):
                    json_log("info", "auth.login_failed", email=data.email)
                    raise HTTPException(status_code=401, detail="invalid credentials")

                if needs_rehash(user["hashed_password"]):
                    cur.execute(
                        "UPDATE users SET hashed_password = %s WHERE id = %s",
                        (hash_password(data.password), user["id"]),
                    )

                # Only a one-way hash of the token is stored.
                token = secrets.token_urlsafe(32)
                expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
                cur.execute(
                    """
                    INSERT INTO auth_sessions (id, user_id, token, user_agent, ip_address, expires_at)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    """,
                    (
                        user["id"],
                        hash_session_token(token),
                        request.headers.get("user-agent"),
                        request.client.host if request.client else None,
                        expires,
                    ),
                )
                cur.execute("UPDATE users SET last_login_at = now() WHERE id = %s", (user["id"],))

    json_log("info", "auth.login", user_id=user["id"], role=user["role"])
    resp = JSONResponse(
        jsonable_encoder(
            {
                "success": True,
                "data": {
                    "token": token,
                    "expires_at": expires,
                    "user": {
                        "id": user["id"],
                        "email": user["email"],
                        "full_name": user["full_name"],
                        "role": user["role"],
                        "avatar": user["avatar"],
                    },
                },
                "message": "login successful",
            }
        )
    )
    _session_cookie(resp, token)
    return resp


@router.post("/register", status_code=201)
def register(data: RegisterIn, user=Depends(require_role("admin"))):
    full_name = data.full_name.strip()
    if not full_name:
        raise HTTPException(status_code=400, detail="full_name is required")
    _assert_password_strength(data.password)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM users WHERE email = %s", (data.email,))
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="email already registered")
                cur.execute(
                    """
                    INSERT INTO users (id, email, hashed_password, full_name, role)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s)
                    RETURNING id, email, full_name, role, is_active, created_at
                    """,
                    (data.email, hash_password(data.password), full_name, data.role),
                )
                created = cur.fetchone()
                audit(cur, user["user_id"], "user_created", "users", created["id"], {"email": data.email, "role": data.role})
                return {"success": True, "data": created, "message": "user registered"}


@router.get("/me")
def me(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, full_name, role, avatar, last_login_at, created_at
                FROM users
                WHERE id = %s
                """,
                (session["user_id"],),
            )
            u = cur.fetchone()
            if not u:
                raise HTTPException(status_code=401, detail="invalid token")
    return {"success": True, "data": {**u, "session_id": session["session_id"]}}


@router.post("/change-password")
def change_password(data: ChangePasswordIn, session=Depends(get_session)):
    """
    Verify the current password, store the new bcrypt hash and revoke every
    other session of the user. The calling session stays valid.
    """
    _assert_password_strength(data.new_password)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT hashed_password FROM users WHERE id = %s FOR UPDATE", (session["user_id"],))
                row = cur.fetchone()
                if not row or not verify_password(data.current_password, row["hashed_password"]):
                    raise HTTPException(status_code=400, detail="current password is incorrect")
                cur.execute(
                    "UPDATE users SET hashed_password = %s, updated_at = now() WHERE id = %s",
                    (hash_password(data.new_password), session["user_id"]),
                )
                cur.execute(
                    "UPDATE auth_sessions SET is_active = false WHERE user_id = %s AND id <> %s",
                    (session["user_id"], session["session_id"]),
                )
                audit(cur, session["user_id"], "password_changed", "users", session["user_id"])
    return {"success": True, "message": "password updated"}


@router.get("/sessions")
def list_sessions(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, user_agent, ip_address, created_at, expires_at
                FROM auth_sessions
                WHERE user_id = %s AND is_active = true AND expires_at > now()
                ORDER BY created_at DESC
                """,
                (session["user_id"],),
            )
            rows = cur.fetchall()
    return {
        "success": True,
        "data": [{**r, "current": r["id"] == session["session_id"]} for r in rows],
    }


@router.delete("/sessions/{session_id}")
def revoke_session(session_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE auth_sessions
                SET is_active = false
                WHERE id = %s AND user_id = %s AND is_active = true
                RETURNING id
                """,
                (session_id, user["user_id"]),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="session not found")
    return {"success": True, "message": "session revoked"}


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE id = %s",
                (session["session_id"],),
            )
    resp = JSONResponse({"success": True, "message": "logged out"})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp
