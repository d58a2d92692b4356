"""
api/errors.py -- Mapping from domain rejections to HTTP errors.

Services return AuthError / LedgerError values; route handlers turn them into
HTTPException with an ErrorDetail payload so api/main.py's handler renders
the standard envelope. The status tables are the only place an error kind
meets an HTTP status code.
"""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, Request

from api.models import ErrorDetail
from auth.models import AuthError, AuthErrorKind
from ledger.models import LedgerError, LedgerErrorKind

AUTH_STATUS: dict[AuthErrorKind, int] = {
    AuthErrorKind.INVALID_CREDENTIALS: 401,
    AuthErrorKind.INVALID_TOKEN: 401,
    AuthErrorKind.INACTIVE: 401,
    AuthErrorKind.ACCOUNT_LOCKED: 423,
}

LEDGER_STATUS: dict[LedgerErrorKind, int] = {
    LedgerErrorKind.STUDENT_NOT_FOUND: 404,
    LedgerErrorKind.NOT_FOUND: 404,
    LedgerErrorKind.ITEM_UNAVAILABLE: 409,
    LedgerErrorKind.ITEM_ALREADY_ON_LOAN: 409,
    LedgerErrorKind.ALREADY_RETURNED: 409,
}


def error_detail(code: str, message: str, retryable: bool = False) -> dict:
    return ErrorDetail(code=code, message=message, retryable=retryable).model_dump()


def auth_error_detail(error: AuthError) -> dict:
    return error_detail(error.kind.value, error.message, error.retryable)


def raise_ledger_error(error: LedgerError) -> NoReturn:
    raise HTTPException(
        status_code=LEDGER_STATUS[error.kind],
        detail=error_detail(error.kind.value, error.message, error.retryable),
    )


def raise_not_found(message: str) -> NoReturn:
    raise HTTPException(status_code=404, detail=error_detail("not_found", message))


def raise_conflict(message: str) -> NoReturn:
    raise HTTPException(status_code=409, detail=error_detail("conflict", message))


def raise_no_changes() -> NoReturn:
    raise HTTPException(status_code=400, detail=error_detail("no_changes", "No fields to update."))


def client_meta(request: Request) -> tuple[str | None, str | None]:
    """Return (ip, user_agent) for audit entries."""
    ip = request.client.host if request.client else None
    return ip, request.headers.get("User-Agent")


def patch_fields(body, nullable: frozenset[str] = frozenset()) -> dict:
    """Fields the client actually sent. Explicit nulls survive only for nullable columns."""
    return {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None or k in nullable}
