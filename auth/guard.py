"""
auth/guard.py -- Authorization Guard: role -> permitted operation.

Pure functions over the closed Role enum. No state, no store access, no side
effects. Always evaluated after SessionManager.verify() has produced an
Identity; a denial is terminal for the request.

The three role sets below are the only policies routes use:
  ADMIN_ONLY      -- user management, item catalogue changes
  CLERK_OR_ADMIN  -- loan desk operations (create / return loans, students)
  ANY_ROLE        -- read-only views, stats, audit review
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from auth.models import Role

ADMIN_ONLY: frozenset[Role] = frozenset({Role.ADMIN})
CLERK_OR_ADMIN: frozenset[Role] = frozenset({Role.CLERK, Role.ADMIN})
ANY_ROLE: frozenset[Role] = frozenset(Role)


class AuthzErrorKind(str, Enum):
    DENIED = "denied"


@dataclass(frozen=True)
class AuthzError:
    kind: AuthzErrorKind
    message: str

    retryable = False


def authorize(role: Role | str, allowed_roles: Iterable[Role]) -> AuthzError | None:
    """Return None when role is in allowed_roles, otherwise an AuthzError.

    A string that is not a Role value raises ValueError: unknown roles are a
    data error, not a denial.
    """
    if Role(role) in frozenset(allowed_roles):
        return None
    return AuthzError(kind=AuthzErrorKind.DENIED, message="Insufficient permissions.")


def is_admin(role: Role | str) -> bool:
    return authorize(role, ADMIN_ONLY) is None


def is_clerk_or_admin(role: Role | str) -> bool:
    return authorize(role, CLERK_OR_ADMIN) is None


def is_any_role(role: Role | str) -> bool:
    return authorize(role, ANY_ROLE) is None
