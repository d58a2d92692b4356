"""
auth/tokens.py -- JWT, password hashing, and refresh-cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Two token types share this module:
       access  -- {sub, email, role, type="access", exp}, minutes-long,
                  sent as a Bearer header.
       refresh -- {sub, email, type="refresh", jti, exp}, days-long, sent
                  only as an httpOnly cookie.
       They are signed with different keys AND carry a type claim, so one can
       never be replayed as the other. Decoding returns None on any failure --
       the session manager turns that into AuthError(INVALID_TOKEN).

  Keys: passed in by the caller (SessionManager holds the Settings object).
       Nothing here reads configuration at import time.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization so response time does not reveal whether
       an email exists [C1].

Layer rule: no imports from api/, ledger/, or audit/.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta

import bcrypt
from jose import JWTError, jwt

from auth.models import Identity

_ALGORITHM = "HS256"

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

REFRESH_COOKIE = "refresh_token"
# __Host- prefix: browser only accepts it with Secure, path=/ and no Domain.
SECURE_REFRESH_COOKIE = "__Host-refresh_token"

# bcrypt input limit. Counted in bytes, so a multibyte password hits it early.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def password_too_long(plain: str) -> bool:
    """True when bcrypt would refuse the password (over 72 UTF-8 bytes)."""
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects input beyond MAX_PASSWORD_BYTES; callers validate with
    password_too_long() first.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones [C1].
_DUMMY_HASH: str = hash_password("loanledger_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded.

    Called on the unknown-email and inactive-account paths so they cost the
    same as a real wrong-password check [C1].
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def new_token_id() -> str:
    return secrets.token_urlsafe(24)


def create_access_token(identity: Identity, secret_key: str, now: datetime, expire_seconds: int) -> str:
    """Encode a signed access JWT carrying identity id, email and role."""
    payload = {
        "sub": str(identity.id),
        "email": identity.email,
        "role": identity.role.value,
        "type": ACCESS_TOKEN_TYPE,
        "exp": now + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def create_refresh_token(
    identity: Identity, token_id: str, secret_key: str, now: datetime, expire_seconds: int
) -> str:
    """Encode a signed refresh JWT. token_id becomes the jti claim.

    No role claim: a refresh token only mints new pairs, it never authorizes
    a business operation.
    """
    payload = {
        "sub": str(identity.id),
        "email": identity.email,
        "type": REFRESH_TOKEN_TYPE,
        "jti": token_id,
        "exp": now + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM)


def decode_token(token: str, secret_key: str, expected_type: str) -> dict | None:
    """Decode and verify a JWT of the given type. Returns the claims or None.

    Signature and exp are checked by jose. A token of the wrong type, or one
    whose sub is not a numeric identity id, is rejected here as well.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != expected_type:
        return None
    try:
        payload["identity_id"] = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None
    if expected_type == ACCESS_TOKEN_TYPE and "role" not in payload:
        return None
    if expected_type == REFRESH_TOKEN_TYPE and not payload.get("jti"):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def refresh_cookie_name(secure: bool) -> str:
    return SECURE_REFRESH_COOKIE if secure else REFRESH_COOKIE


def set_refresh_cookie(response, token: str, secure: bool, max_age: int) -> None:
    """Write the refresh token as an httpOnly, same-site-strict cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation for
        the refresh endpoint).
    secure: HTTPS-only when SECURE_COOKIES=true (production).
    max_age: matches the JWT expiry so both expire together.
    """
    response.set_cookie(
        refresh_cookie_name(secure),
        value=token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=max_age,
        path="/",
    )


def clear_refresh_cookie(response, secure: bool) -> None:
    response.delete_cookie(
        refresh_cookie_name(secure),
        httponly=True,
        samesite="strict",
        secure=secure,
        path="/",
    )
