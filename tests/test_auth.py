import calendar
from datetime import datetime, timedelta

import jwt
import pytest
from bson import ObjectId

from auth import (
    check_password,
    changed_password_after,
    create_password_reset_token,
    hash_password,
    hash_reset_token,
    is_allowed,
    parse_duration,
    password_fields,
    sign_token,
    verify_token,
)


def test_hashing_is_salted_and_verifiable():
    first = hash_password("correct horse")
    second = hash_password("correct horse")
    assert first != second
    assert check_password("correct horse", first)
    assert check_password("correct horse", second)
    assert not check_password("wrong horse", first)


def test_check_password_rejects_garbage_hash():
    assert not check_password("anything", "not-a-bcrypt-hash")
    assert not check_password("", hash_password("something"))


def test_new_user_password_fields_have_no_change_timestamp():
    fields = password_fields("secret123", is_new=True)
    assert set(fields) == {"password"}
    assert fields["password"] != "secret123"


def test_changed_password_fields_are_backdated():
    before = datetime.utcnow()
    fields = password_fields("secret123")
    assert fields["password_changed_at"] < before


def test_reset_token_is_stored_only_as_hash():
    token, fields = create_password_reset_token()
    assert len(token) == 64
    assert fields["password_reset_token"] == hash_reset_token(token)
    assert token not in fields.values()
    remaining = fields["password_reset_expires"] - datetime.utcnow()
    assert timedelta(minutes=9) < remaining <= timedelta(minutes=10)


def test_sign_and_verify_roundtrip():
    user_id = ObjectId()
    decoded = verify_token(sign_token(user_id))
    assert decoded["id"] == str(user_id)
    assert decoded["exp"] > decoded["iat"]


def test_expired_token_is_rejected(monkeypatch):
    monkeypatch.setenv("JWT_EXPIRES_IN", "10s")
    token = sign_token(ObjectId(), now=datetime.utcnow() - timedelta(minutes=1))
    with pytest.raises(jwt.ExpiredSignatureError):
        verify_token(token)


def test_token_signed_with_other_secret_is_rejected():
    token = jwt.encode({"id": "x", "iat": 1, "exp": 9999999999}, "other-secret", algorithm="HS256")
    with pytest.raises(jwt.InvalidSignatureError):
        verify_token(token)


@pytest.mark.parametrize("value,expected", [
    ("90d", timedelta(days=90)),
    ("12h", timedelta(hours=12)),
    ("30m", timedelta(minutes=30)),
    ("45s", timedelta(seconds=45)),
    ("3600", timedelta(seconds=3600)),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


def test_parse_duration_rejects_nonsense():
    with pytest.raises(ValueError):
        parse_duration("soon")


def test_changed_password_after():
    changed = datetime(2024, 6, 1, 12, 0, 0)
    user = {"password_changed_at": changed}
    changed_ts = calendar.timegm(changed.utctimetuple())
    assert changed_password_after(user, changed_ts - 3600)
    assert not changed_password_after(user, changed_ts + 60)
    assert not changed_password_after({}, changed_ts - 3600)


@pytest.mark.parametrize("role,roles,allowed", [
    ("admin", ("admin", "lead-guide"), True),
    ("lead-guide", ("admin", "lead-guide"), True),
    ("guide", ("admin", "lead-guide"), False),
    ("user", (), False),
    (None, ("user",), False),
])
def test_role_policy(role, roles, allowed):
    assert is_allowed(role, roles) is allowed
