"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in ledger/models.py and audit/models.py -- dataclasses own domain shape;
stores and services do the work.

Rejections are values, not exceptions: SessionManager methods return either
their result or an AuthError, and callers branch on AuthError.kind.

Layer rule: no imports from api/, ledger/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of roles. Stored as the lower-case value."""

    ADMIN = "admin"
    CLERK = "clerk"
    AUDITOR = "auditor"


@dataclass
class Identity:
    """An operator account that can log in (admin, clerk, or auditor).

    email is stored normalized (stripped, lower-cased) and is unique.
    locked_until is set when failed_login_attempts reaches the lockout
    threshold; the account is locked while it lies in the future.
    refresh_token_id is the jti of the only refresh token currently accepted
    for this identity. Rotation replaces it; logout clears it.
    """

    email: str
    role: Role
    hashed_password: str
    id: int | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    refresh_token_id: str | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    identity: Identity


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_TOKEN = "invalid_token"
    INACTIVE = "inactive"


_AUTH_MESSAGES: dict[AuthErrorKind, str] = {
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid email or password.",
    AuthErrorKind.ACCOUNT_LOCKED: "Account temporarily locked due to too many failed attempts.",
    AuthErrorKind.INVALID_TOKEN: "Invalid or expired token.",
    AuthErrorKind.INACTIVE: "Account is inactive.",
}


@dataclass(frozen=True)
class AuthError:
    """An authentication rejection. Always terminal for the request."""

    kind: AuthErrorKind
    message: str

    @classmethod
    def of(cls, kind: AuthErrorKind) -> AuthError:
        return cls(kind=kind, message=_AUTH_MESSAGES[kind])

    @property
    def retryable(self) -> bool:
        # A lock expires on its own; everything else needs new credentials.
        return self.kind is AuthErrorKind.ACCOUNT_LOCKED
