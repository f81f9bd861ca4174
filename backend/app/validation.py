from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical values mirror the CHECK constraints in `backend/db/schema.sql`.
OrderStatus = Annotated[Literal["pending", "processing", "completed", "cancelled"], BeforeValidator(_to_lower_str)]
PaymentStatus = Annotated[Literal["pending", "partial", "paid"], BeforeValidator(_to_lower_str)]
InvoiceStatus = Annotated[Literal["pending", "paid", "overdue", "cancelled"], BeforeValidator(_to_lower_str)]
PurchaseOrderStatus = Annotated[Literal["pending", "confirmed", "received", "cancelled"], BeforeValidator(_to_lower_str)]
PaymentRecordStatus = Annotated[Literal["completed", "pending", "failed", "refunded"], BeforeValidator(_to_lower_str)]
MovementType = Annotated[
    Literal["in", "out", "adjustment", "sale", "purchase", "return", "loss"],
    BeforeValidator(_to_lower_str),
]
CustomerType = Annotated[Literal["individual", "business"], BeforeValidator(_to_lower_str)]
PartyStatus = Annotated[Literal["active", "desactive"], BeforeValidator(_to_lower_str)]
ProductStatus = Annotated[Literal["active", "inactive", "discontinued"], BeforeValidator(_to_lower_str)]
UnitType = Annotated[Literal["weight", "volume", "length", "unit"], BeforeValidator(_to_lower_str)]
UserRole = Annotated[Literal["admin", "manager", "vendedor", "cajero", "user"], BeforeValidator(_to_lower_str)]
BalanceOperation = Annotated[Literal["add", "subtract", "set"], BeforeValidator(_to_lower_str)]
SettingType = Annotated[Literal["string", "number", "boolean", "json"], BeforeValidator(_to_lower_str)]
Language = Annotated[Literal["es", "en"], BeforeValidator(_to_lower_str)]

# Payment methods are free-form identifiers (cash, card, transfer, credit, ...).
# Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]

Sku = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=64)]
Email = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
]
HexColor = Annotated[str, BeforeValidator(_strip_str), StringConstraints(pattern=r"^#[0-9A-Fa-f]{6}$")]
