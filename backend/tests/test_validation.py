import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import Email, HexColor, OrderStatus, PaymentMethod, UserRole


class _M(BaseModel):
    status: OrderStatus
    method: PaymentMethod
    role: UserRole
    email: Email


def test_validation_types_normalize_case():
    m = _M(status=" Completed ", method=" Cash ", role="VENDEDOR", email=" Ana@Example.COM ")
    assert m.status == "completed"
    assert m.method == "cash"
    assert m.role == "vendedor"
    assert m.email == "ana@example.com"


def test_payment_method_rejects_internal_spaces():
    with pytest.raises(ValidationError):
        _M(status="pending", method="cash money", role="admin", email="a@b.co")


def test_unknown_status_is_rejected():
    with pytest.raises(ValidationError):
        _M(status="shipped", method="cash", role="admin", email="a@b.co")


def test_hex_color_requires_six_digits():
    class _C(BaseModel):
        color: HexColor

    assert _C(color=" #10B981 ").color == "#10B981"
    with pytest.raises(ValidationError):
        _C(color="green")
