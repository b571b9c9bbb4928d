import hashlib

from backend.app.security import (
    hash_password,
    hash_session_token,
    needs_rehash,
    new_session_token,
    verify_password,
)


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert h == "sha256:" + hashlib.sha256(b"abc").hexdigest()


def test_new_session_tokens_are_unique():
    assert new_session_token() != new_session_token()


def test_bcrypt_password_roundtrip():
    h = hash_password("s3cret")
    assert h.startswith("$2")
    assert verify_password("s3cret", h) is True
    assert verify_password("wrong", h) is False
    assert needs_rehash(h) is False


def test_legacy_sha256_hash_verifies_and_needs_rehash():
    legacy = hashlib.sha256(b"1234").hexdigest()
    assert verify_password("1234", legacy) is True
    assert verify_password("4321", legacy) is False
    assert needs_rehash(legacy) is True


def test_missing_hash_never_verifies():
    assert verify_password("x", None) is False
    assert verify_password("x", "") is False


def test_unrecognized_hash_formats_never_verify():
    for stored in ("plain-text", "deadbeef", "$argon2id$v=19$m=65536,t=3,p=4$abc$def"):
        assert verify_password("plain-text", stored) is False
        assert needs_rehash(stored) is False


def test_legacy_hash_match_ignores_hex_case():
    legacy = hashlib.sha256(b"1234").hexdigest().upper()
    assert verify_password("1234", legacy) is True
