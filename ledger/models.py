"""
ledger/models.py -- Domain dataclasses for students, items and loans.

These are pure data containers. The loan state machine lives in
ledger/service.py; the SQL that makes its transitions atomic lives in
ledger/store.py.

Loan states:
    taken --(sweep, age > max_loan_hours)--> overdue
    taken --(return)--> returned
    overdue --(return)--> returned
returned is terminal. No other transitions exist.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class LoanStatus(str, Enum):
    TAKEN = "taken"
    OVERDUE = "overdue"
    RETURNED = "returned"


# A loan in one of these states holds its item. At most one per item.
ACTIVE_STATUSES: tuple[LoanStatus, ...] = (LoanStatus.TAKEN, LoanStatus.OVERDUE)


@dataclass
class Student:
    """A borrower. Not an authenticated identity; identified by student_no."""

    student_no: str
    name: str
    surname: str
    id: int | None = None
    room_no: str | None = None
    created_at: datetime | None = None


@dataclass
class Item:
    """A loanable physical object. asset_tag is unique when present."""

    name: str
    category: str
    id: int | None = None
    specification: str | None = None
    asset_tag: str | None = None
    is_active: bool = True
    created_at: datetime | None = None


@dataclass
class Loan:
    """One item handed to one student.

    created_by_id / closed_by_id are identity ids of the operators who
    opened and closed the loan. returned_at and closed_by_id are set together,
    exactly once, by the return transition.
    """

    student_id: int
    item_id: int
    destination: str
    created_by_id: int
    taken_at: datetime
    id: int | None = None
    card_received: bool = False
    status: LoanStatus = LoanStatus.TAKEN
    returned_at: datetime | None = None
    closed_by_id: int | None = None
    notes: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class LedgerStats:
    items_out: int
    overdue: int
    returns_today: int
    available: int
    total_students: int
    total_items: int


class LedgerErrorKind(str, Enum):
    STUDENT_NOT_FOUND = "student_not_found"
    ITEM_UNAVAILABLE = "item_unavailable"
    ITEM_ALREADY_ON_LOAN = "item_already_on_loan"
    NOT_FOUND = "not_found"
    ALREADY_RETURNED = "already_returned"


_LEDGER_MESSAGES: dict[LedgerErrorKind, str] = {
    LedgerErrorKind.STUDENT_NOT_FOUND: "Student not found. Please create the student first.",
    LedgerErrorKind.ITEM_UNAVAILABLE: "Item not found or inactive.",
    LedgerErrorKind.ITEM_ALREADY_ON_LOAN: "Item is currently on loan.",
    LedgerErrorKind.NOT_FOUND: "Loan not found.",
    LedgerErrorKind.ALREADY_RETURNED: "Loan already returned.",
}


@dataclass(frozen=True)
class LedgerError:
    """A business-rule rejection from the ledger. Returned, never raised."""

    kind: LedgerErrorKind
    message: str

    @classmethod
    def of(cls, kind: LedgerErrorKind) -> LedgerError:
        return cls(kind=kind, message=_LEDGER_MESSAGES[kind])

    @property
    def retryable(self) -> bool:
        # None of these change by retrying the same request unchanged.
        return False
