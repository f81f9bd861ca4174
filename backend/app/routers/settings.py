import json
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..audit import audit
from ..db import get_conn
from ..deps import get_current_user, require_role
from ..validation import Email, SettingType

router = APIRouter(prefix="/settings", tags=["settings"])


class CompanySettingsIn(BaseModel):
    company_name: str
    tax_id: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[Email] = None
    currency: str = "USD"
    logo_url: Optional[str] = None


class SystemSettingIn(BaseModel):
    key: str
    value: Any = None
    type: Optional[SettingType] = None
    description: Optional[str] = None


def infer_setting_type(value) -> str:
    # bool first: bool is a subclass of int.
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, (dict, list)):
        return "json"
    return "string"


def encode_setting(value, value_type: str) -> Optional[str]:
    """Serialize a setting value to its stored text form, validating it against the type."""
    if value is None:
        return None
    if value_type == "boolean":
        if isinstance(value, bool):
            return "true" if value else "false"
        text = str(value).strip().lower()
        if text not in {"true", "false"}:
            raise HTTPException(status_code=400, detail="boolean setting must be true or false")
        return text
    if value_type == "number":
        try:
            return str(Decimal(str(value)))
        except InvalidOperation:
            raise HTTPException(status_code=400, detail="number setting must be numeric")
    if value_type == "json":
        return json.dumps(value)
    return str(value)


def decode_setting(raw: Optional[str], value_type: str):
    if raw is None:
        return None
    if value_type == "boolean":
        return raw.strip().lower() == "true"
    if value_type == "number":
        try:
            return Decimal(raw)
        except InvalidOperation:
            return Decimal("0")
    if value_type == "json":
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


@router.get("", dependencies=[Depends(get_current_user)])
def get_settings():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM company_settings WHERE id = 1")
            company = cur.fetchone() or {}
            cur.execute("SELECT key, value, value_type FROM system_settings ORDER BY key")
            system = {r["key"]: decode_setting(r["value"], r["value_type"]) for r in cur.fetchall()}
    return {"success": True, "data": {"company": company, "system": system}}


@router.put("/company")
def update_company(data: CompanySettingsIn, user=Depends(require_role("admin"))):
    name = data.company_name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="company_name is required")
    currency = (data.currency or "").strip().upper()
    if len(currency) != 3:
        raise HTTPException(status_code=400, detail="currency must be a 3-letter code")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO company_settings (id, company_name, tax_id, address, phone, email, currency, logo_url)
                    VALUES (1, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                      company_name = EXCLUDED.company_name,
                      tax_id = EXCLUDED.tax_id,
                      address = EXCLUDED.address,
                      phone = EXCLUDED.phone,
                      email = EXCLUDED.email,
                      currency = EXCLUDED.currency,
                      logo_url = EXCLUDED.logo_url,
                      updated_at = now()
                    RETURNING *
                    """,
                    (
                        name,
                        (data.tax_id or "").strip() or None,
                        (data.address or "").strip() or None,
                        (data.phone or "").strip() or None,
                        data.email,
                        currency,
                        (data.logo_url or "").strip() or None,
                    ),
                )
                row = cur.fetchone()
                audit(cur, user["user_id"], "company_settings_updated", "company_settings", None, {"company_name": name})
                return {"success": True, "data": row, "message": "company settings updated"}


@router.put("/system")
def update_system_setting(data: SystemSettingIn, user=Depends(require_role("admin"))):
    key = data.key.strip()
    if not key:
        raise HTTPException(status_code=400, detail="key is required")
    value_type = data.type or infer_setting_type(data.value)
    raw = encode_setting(data.value, value_type)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO system_settings (key, value, value_type, description, updated_by)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (key) DO UPDATE SET
                      value = EXCLUDED.value,
                      value_type = EXCLUDED.value_type,
                      description = COALESCE(EXCLUDED.description, system_settings.description),
                      updated_by = EXCLUDED.updated_by,
                      updated_at = now()
                    RETURNING key, value, value_type, description, updated_at
                    """,
                    (key, raw, value_type, (data.description or "").strip() or None, user["user_id"]),
                )
                row = cur.fetchone()
                audit(cur, user["user_id"], "system_setting_updated", "system_settings", None, {"key": key, "type": value_type})
                return {
                    "success": True,
                    "data": {**row, "value": decode_setting(row["value"], row["value_type"])},
                    "message": "system setting updated",
                }


@router.get("/system/{key}", dependencies=[Depends(get_current_user)])
def get_system_setting(key: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT key, value, value_type, description, updated_at FROM system_settings WHERE key = %s",
                (key,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="setting not found")
    return {"success": True, "data": {**row, "value": decode_setting(row["value"], row["value_type"])}}
