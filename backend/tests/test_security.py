import hashlib

from backend.app.security import hash_password, hash_session_token, is_legacy_hash, needs_rehash, verify_password


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert h == hash_session_token("abc")
    assert h != hash_session_token("abd")


def test_bcrypt_roundtrip():
    h = hash_password("secret123")
    assert h.startswith("$2")
    assert verify_password("secret123", h) is True
    assert verify_password("wrong", h) is False
    assert needs_rehash(h) is False


def test_legacy_sha256_hash_verifies_and_needs_rehash():
    legacy = hashlib.sha256(b"secret123").hexdigest()
    assert is_legacy_hash(legacy) is True
    assert verify_password("secret123", legacy) is True
    assert verify_password("nope", legacy) is False
    assert needs_rehash(legacy) is True


def test_missing_hash_never_verifies():
    assert verify_password("anything", None) is False
    assert needs_rehash(None) is False
