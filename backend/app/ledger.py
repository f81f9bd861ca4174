"""
Money arithmetic and status rules shared by orders, invoices, payments and
purchase orders. Everything here is pure so it can be unit tested without a
database; handlers call these helpers inside their transaction.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional

from fastapi import HTTPException

MONEY = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(v) -> Decimal:
    if v is None:
        return ZERO
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def q_money(v) -> Decimal:
    return to_decimal(v).quantize(MONEY, rounding=ROUND_HALF_UP)


def line_total(quantity, unit_price) -> Decimal:
    return q_money(to_decimal(quantity) * to_decimal(unit_price))


def document_totals(
    lines: Iterable[Mapping],
    discount_percentage=ZERO,
    tax_rate=ZERO,
) -> dict:
    """
    Totals for an order-like document.

    subtotal is the sum of the (already rounded) line totals, so it always
    equals the sum of the stored item totals. Tax applies to the post-discount
    subtotal.
    """
    subtotal = sum((line_total(l["quantity"], l["unit_price"]) for l in lines), ZERO)
    subtotal = q_money(subtotal)
    pct = to_decimal(discount_percentage)
    if pct < 0 or pct > 100:
        raise HTTPException(status_code=400, detail="discount_percentage must be between 0 and 100")
    discount_amount = q_money(subtotal * pct / Decimal("100"))
    tax_amount = q_money((subtotal - discount_amount) * to_decimal(tax_rate))
    total = subtotal - discount_amount + tax_amount
    return {
        "subtotal": subtotal,
        "discount_percentage": pct,
        "discount_amount": discount_amount,
        "tax_amount": tax_amount,
        "total": total,
    }


# Allowed transitions; terminal states map to an empty set.
ORDER_TRANSITIONS = {
    "pending": {"processing", "completed", "cancelled"},
    "processing": {"pending", "completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

PURCHASE_ORDER_TRANSITIONS = {
    "pending": {"confirmed", "received", "cancelled"},
    "confirmed": {"received", "cancelled"},
    "received": set(),
    "cancelled": set(),
}

INVOICE_TRANSITIONS = {
    "pending": {"overdue", "cancelled"},
    "overdue": {"pending", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}


def assert_transition(transitions: dict, current: str, target: str, entity: str = "order") -> bool:
    """
    Returns False for a same-status no-op, True when the change is allowed,
    raises 400 otherwise.
    """
    if current == target:
        return False
    allowed = transitions.get(current)
    if allowed is None:
        raise HTTPException(status_code=400, detail=f"unknown {entity} status: {current}")
    if not allowed:
        raise HTTPException(status_code=400, detail=f"cannot change status of {current} {entity}")
    if target not in allowed:
        raise HTTPException(status_code=400, detail=f"invalid {entity} status transition: {current} -> {target}")
    return True


def payment_status_for(total, paid) -> str:
    total = q_money(total)
    paid = q_money(paid)
    # A zero-total document is settled from the start.
    if paid >= total:
        return "paid"
    if paid <= 0:
        return "pending"
    return "partial"


def invoice_status_for(current: str, total, paid) -> str:
    """
    Invoice status after a payment re-sum. Cancelled invoices never change;
    a fully paid invoice becomes `paid`; an invoice that drops below its total
    (payment edited or deleted) goes back to `pending`.
    """
    if current == "cancelled":
        return current
    if payment_status_for(total, paid) == "paid":
        return "paid"
    if current == "paid":
        return "pending"
    return current


def assert_not_overpaid(total, already_paid, amount, detail: str = "payment exceeds remaining balance"):
    total = q_money(total)
    already_paid = q_money(already_paid)
    amount = q_money(amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    if already_paid + amount > total:
        raise HTTPException(
            status_code=400,
            detail={
                "error": detail,
                "total": str(total),
                "paid": str(already_paid),
                "remaining": str(max(total - already_paid, ZERO)),
            },
        )


def apply_balance_operation(current, amount, operation: str) -> Decimal:
    current = q_money(current)
    amount = q_money(amount)
    if operation == "add":
        return current + amount
    if operation == "subtract":
        return current - amount
    if operation == "set":
        return amount
    raise HTTPException(status_code=400, detail="invalid balance operation")


def signed_stock_delta(movement_type: str, quantity) -> Decimal:
    """
    Stock delta for a manual change. Only `adjustment` carries its own sign,
    outbound types always subtract.
    """
    qty = to_decimal(quantity)
    if movement_type == "adjustment":
        return qty
    if movement_type in {"in", "purchase", "return"}:
        if qty < 0:
            raise HTTPException(status_code=400, detail=f"quantity must be positive for {movement_type} movements")
        return qty
    if movement_type in {"out", "sale", "loss"}:
        return -abs(qty)
    raise HTTPException(status_code=400, detail="invalid movement type")


def remaining_to_receive(quantity, received_quantity: Optional[object]) -> Decimal:
    left = to_decimal(quantity) - to_decimal(received_quantity)
    return left if left > 0 else ZERO
