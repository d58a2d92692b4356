"""
audit/models.py -- Domain dataclass and action enumeration for the audit trail.

AuditEntry is immutable once written: the store only inserts and selects,
so the dataclass is frozen to match.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class AuditAction(str, Enum):
    USER_LOGIN = "USER_LOGIN"
    USER_LOCKED = "USER_LOCKED"
    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    ITEM_CREATE = "ITEM_CREATE"
    ITEM_UPDATE = "ITEM_UPDATE"
    LOAN_CREATE = "LOAN_CREATE"
    LOAN_RETURN = "LOAN_RETURN"
    LOAN_OVERDUE = "LOAN_OVERDUE"
    STUDENT_CREATE = "STUDENT_CREATE"
    STUDENT_UPDATE = "STUDENT_UPDATE"
    SETTINGS_CHANGE = "SETTINGS_CHANGE"


@dataclass(frozen=True)
class AuditEntry:
    """A single security- or ledger-relevant event.

    actor_id is None for system events (the overdue sweep).
    entity is a type label ("User", "Loan", "Item", "Student", "System");
    entity_id is stored as text so any key type fits.
    diff is the decoded JSON payload, or None.
    """

    action: AuditAction
    entity: str
    at: datetime
    id: int | None = None
    actor_id: int | None = None
    entity_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    diff: Any = None
