"""
Credentials and session tokens

Password hashing (bcrypt), signed session tokens (HS256 JWT), password-reset
tokens, and the FastAPI dependencies guarding protected routes.
"""

import os
import re
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import bcrypt
import jwt
from bson import ObjectId
from fastapi import Depends, Header, Request, Response

from database import serialize, users
from errors import AppError, is_development

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
RESET_TOKEN_BYTES = 32
RESET_TOKEN_TTL = timedelta(minutes=10)
# password_changed_at is backdated so a token signed right after the change still counts as newer
PASSWORD_CHANGE_SKEW = timedelta(seconds=1)

_DURATION = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$")
_UNITS = {"": "seconds", "s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


# ----------------------
# Passwords
# ----------------------

def _secret(password: str) -> bytes:
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    rounds = int(os.getenv("BCRYPT_ROUNDS", "12"))
    return bcrypt.hashpw(_secret(password), bcrypt.gensalt(rounds)).decode("utf-8")


def check_password(candidate: str, stored_hash: str) -> bool:
    """Constant-time check of a plaintext candidate against a stored bcrypt hash."""
    if not candidate or not stored_hash:
        return False
    try:
        return bcrypt.checkpw(_secret(candidate), stored_hash.encode("utf-8"))
    except ValueError:
        return False


def password_fields(password: str, is_new: bool = False) -> Dict[str, Any]:
    """Fields to store when a password is set. Existing users also get password_changed_at."""
    fields: Dict[str, Any] = {"password": hash_password(password)}
    if not is_new:
        fields["password_changed_at"] = datetime.utcnow() - PASSWORD_CHANGE_SKEW
    return fields


def changed_password_after(user: Dict[str, Any], issued_at: int) -> bool:
    """True when the user's password changed after a token issued at `issued_at` (epoch seconds)."""
    changed_at: Optional[datetime] = user.get("password_changed_at")
    if not changed_at:
        return False
    if changed_at.tzinfo is None:
        changed_at = changed_at.replace(tzinfo=timezone.utc)
    return issued_at < int(changed_at.timestamp())


# ----------------------
# Reset tokens
# ----------------------

def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_password_reset_token() -> Tuple[str, Dict[str, Any]]:
    """Return the plaintext token for the user and the fields to store (its hash and deadline)."""
    token = secrets.token_hex(RESET_TOKEN_BYTES)
    fields = {
        "password_reset_token": hash_reset_token(token),
        "password_reset_expires": datetime.utcnow() + RESET_TOKEN_TTL,
    }
    return token, fields


def reset_token_conditions(token: str) -> Dict[str, Any]:
    return {
        "password_reset_token": hash_reset_token(token),
        "password_reset_expires": {"$gt": datetime.utcnow()},
    }


RESET_FIELDS = ("password_reset_token", "password_reset_expires")


# ----------------------
# Session tokens
# ----------------------

def parse_duration(value: str) -> timedelta:
    """Parse "90d", "12h", "30m", "45s", "2w" or a bare number of seconds."""
    match = _DURATION.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_UNITS[unit]: int(amount)})


def _jwt_secret() -> str:
    return os.getenv("JWT_SECRET", "dev-secret-change-me")


def sign_token(user_id: Any, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    ttl = parse_duration(os.getenv("JWT_EXPIRES_IN", "90d"))
    payload = {"id": str(user_id), "iat": now, "exp": now + ttl}
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """Decode a session token. Raises jwt.InvalidTokenError (or its ExpiredSignatureError subclass)."""
    return jwt.decode(
        token,
        _jwt_secret(),
        algorithms=[JWT_ALGORITHM],
        options={"require": ["id", "iat", "exp"]},
    )


def set_token_cookie(response: Response, token: str) -> None:
    days = int(os.getenv("JWT_COOKIE_EXPIRES_IN", "90"))
    response.set_cookie(
        "jwt",
        token,
        expires=datetime.now(timezone.utc) + timedelta(days=days),
        httponly=True,
        secure=not is_development(),
    )


def create_send_token(user: Dict[str, Any], response: Response, status_code: int = 200) -> Dict[str, Any]:
    """Sign a token for `user`, set it as the jwt cookie and build the response body."""
    token = sign_token(user["_id"])
    set_token_cookie(response, token)
    response.status_code = status_code
    public = {k: v for k, v in user.items() if k not in ("password", "active", "__v")}
    return {"status": "success", "token": token, "data": {"user": serialize(public)}}


# ----------------------
# Guards
# ----------------------

def protect(request: Request, authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    """Resolve the current user from the bearer token or reject the request."""
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AppError("Please login to access this route!", 401)

    decoded = verify_token(token)

    user = users.get(decoded["id"]) if ObjectId.is_valid(decoded["id"]) else None
    if not user:
        raise AppError("The user belonging to this token no longer exist!", 401)

    if changed_password_after(user, decoded["iat"]):
        logger.info("Rejected token for user %s issued before a password change", decoded["id"])
        raise AppError("Your password has changed since you last logged in! Please login again.", 401)

    request.state.user = user
    return user


def is_allowed(role: Optional[str], roles: Iterable[str]) -> bool:
    return role in set(roles)


def restrict_to(*roles: str):
    """Dependency factory: the current user must hold one of `roles`."""

    def guard(user: Dict[str, Any] = Depends(protect)) -> Dict[str, Any]:
        if not is_allowed(user.get("role", "user"), roles):
            raise AppError("You are not authorized to access this route!", 403)
        return user

    return guard
