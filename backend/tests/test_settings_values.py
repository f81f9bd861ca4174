from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers.settings import decode_setting, encode_setting, infer_setting_type


def test_infer_setting_type():
    assert infer_setting_type(True) == "boolean"
    assert infer_setting_type(3) == "number"
    assert infer_setting_type({"a": 1}) == "json"
    assert infer_setting_type("abc") == "string"


def test_boolean_settings():
    assert encode_setting(True, "boolean") == "true"
    assert encode_setting(" FALSE ", "boolean") == "false"
    assert decode_setting("true", "boolean") is True
    with pytest.raises(HTTPException) as e:
        encode_setting("maybe", "boolean")
    assert e.value.status_code == 400


def test_number_settings():
    assert encode_setting("18.5", "number") == "18.5"
    assert decode_setting("18.5", "number") == Decimal("18.5")
    with pytest.raises(HTTPException):
        encode_setting("eighteen", "number")


def test_json_settings():
    raw = encode_setting({"low_stock": 10}, "json")
    assert decode_setting(raw, "json") == {"low_stock": 10}
    assert decode_setting("{broken", "json") == "{broken"


def test_none_passes_through():
    assert encode_setting(None, "string") is None
    assert decode_setting(None, "number") is None
