"""
ledger/service.py -- The loan ledger: loan state machine plus the student and
item registries it depends on.

Rejections are returned as LedgerError values; callers branch on
LedgerError.kind. Store failures (sqlalchemy errors other than the
active-loan uniqueness violation) propagate -- a loan operation must never
report success against a failed store.

Audit entries are written after the ledger change has committed. AuditTrail
swallows its own failures, so an audit outage cannot undo or fail a loan.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from audit.models import AuditAction
from audit.trail import AuditTrail
from core.clock import Clock, utcnow
from ledger.models import Item, LedgerError, LedgerErrorKind, LedgerStats, Loan, LoanStatus, Student
from ledger.store import LedgerStore

logger = logging.getLogger("loanledger.ledger")


class LoanLedger:
    def __init__(self, store: LedgerStore, audit: AuditTrail, clock: Clock = utcnow) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock

    # ------------------------------------------------------------------
    # Loan transitions
    # ------------------------------------------------------------------

    def create_loan(
        self,
        student_no: str,
        item_id: int,
        destination: str,
        card_received: bool,
        notes: str | None,
        creator_id: int,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Loan | LedgerError:
        """Open a loan of item_id to the student with student_no.

        Checks, in order: the student exists (never auto-created), the item
        exists and is active, the item has no taken or overdue loan. The last
        check is repeated by the database at insert time through the unique
        partial index, so a concurrent winner turns this call into
        ITEM_ALREADY_ON_LOAN instead of a second active loan.
        """
        student = self._store.get_student_by_no(student_no)
        if student is None:
            return LedgerError.of(LedgerErrorKind.STUDENT_NOT_FOUND)

        item = self._store.get_item(item_id)
        if item is None or not item.is_active:
            return LedgerError.of(LedgerErrorKind.ITEM_UNAVAILABLE)

        if self._store.has_active_loan(item_id):
            return LedgerError.of(LedgerErrorKind.ITEM_ALREADY_ON_LOAN)

        loan = Loan(
            student_id=student.id,
            item_id=item.id,
            destination=destination,
            card_received=card_received,
            notes=notes,
            created_by_id=creator_id,
            taken_at=self._clock(),
            status=LoanStatus.TAKEN,
        )
        try:
            loan.id = self._store.insert_loan(loan)
        except IntegrityError:
            logger.info("Concurrent loan for item %s rejected by active-loan index", item_id)
            return LedgerError.of(LedgerErrorKind.ITEM_ALREADY_ON_LOAN)

        self._audit.append(
            AuditAction.LOAN_CREATE,
            "Loan",
            actor_id=creator_id,
            entity_id=loan.id,
            ip=ip,
            user_agent=user_agent,
            diff={"created": asdict(loan)},
        )
        return loan

    def return_loan(
        self,
        loan_id: int,
        closer_id: int,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Loan | LedgerError:
        """Close an active loan. Never a silent no-op.

        The transition is one conditional UPDATE; only when it matched no row
        is the loan read back, to report NOT_FOUND or ALREADY_RETURNED.
        """
        if not self._store.close_loan(loan_id, closer_id, self._clock()):
            if self._store.get_loan(loan_id) is None:
                return LedgerError.of(LedgerErrorKind.NOT_FOUND)
            return LedgerError.of(LedgerErrorKind.ALREADY_RETURNED)

        loan = self._store.get_loan(loan_id)
        self._audit.append(
            AuditAction.LOAN_RETURN,
            "Loan",
            actor_id=closer_id,
            entity_id=loan_id,
            ip=ip,
            user_agent=user_agent,
        )
        return loan

    # ------------------------------------------------------------------
    # Loan queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: int) -> Loan | None:
        return self._store.get_loan(loan_id)

    def list_loans(
        self,
        status: LoanStatus | None = None,
        student_id: int | None = None,
        item_id: int | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[Loan]:
        return self._store.list_loans(
            status=status, student_id=student_id, item_id=item_id, from_time=from_time, to_time=to_time
        )

    def list_active_loans(self) -> list[Loan]:
        return self._store.list_loans(statuses=(LoanStatus.TAKEN, LoanStatus.OVERDUE))

    def list_overdue_loans(self) -> list[Loan]:
        return self._store.list_loans(status=LoanStatus.OVERDUE)

    def list_available_items(self) -> list[Item]:
        return self._store.list_available_items()

    def compute_stats(self, tz_offset_minutes: int = 0) -> LedgerStats:
        """Aggregate counters for the dashboard.

        returns_today covers the caller's current local day. tz_offset_minutes
        is the caller's offset east of UTC (e.g. 120 for UTC+2); 0 means the
        UTC day.
        """
        offset = timedelta(minutes=tz_offset_minutes)
        local_now = self._clock().astimezone(timezone.utc) + offset
        day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0) - offset
        counts = self._store.counts(day_start, day_start + timedelta(hours=24))
        return LedgerStats(**counts)

    # ------------------------------------------------------------------
    # Student registry
    # ------------------------------------------------------------------

    def create_student(
        self, student: Student, actor_id: int, ip: str | None = None, user_agent: str | None = None
    ) -> Student:
        """Register a borrower. Raises IntegrityError on a duplicate student_no."""
        student_id = self._store.create_student(student)
        created = self._store.get_student(student_id)
        self._audit.append(
            AuditAction.STUDENT_CREATE,
            "Student",
            actor_id=actor_id,
            entity_id=student_id,
            ip=ip,
            user_agent=user_agent,
            diff={"created": asdict(created)},
        )
        return created

    def update_student(
        self, student_id: int, actor_id: int, ip: str | None = None, user_agent: str | None = None, **fields
    ) -> Student | None:
        """Apply field updates. Returns None when the student does not exist."""
        if not self._store.update_student(student_id, **fields):
            return None
        self._audit.append(
            AuditAction.STUDENT_UPDATE,
            "Student",
            actor_id=actor_id,
            entity_id=student_id,
            ip=ip,
            user_agent=user_agent,
            diff={"updated": fields},
        )
        return self._store.get_student(student_id)

    def get_student(self, student_id: int) -> Student | None:
        return self._store.get_student(student_id)

    def search_students(self, query: str | None = None) -> list[Student]:
        if query:
            return self._store.search_students(query)
        return self._store.list_students()

    # ------------------------------------------------------------------
    # Item registry
    # ------------------------------------------------------------------

    def create_item(self, item: Item, actor_id: int, ip: str | None = None, user_agent: str | None = None) -> Item:
        """Add an item to the catalogue. Raises IntegrityError on a duplicate asset_tag."""
        item_id = self._store.create_item(item)
        created = self._store.get_item(item_id)
        self._audit.append(
            AuditAction.ITEM_CREATE,
            "Item",
            actor_id=actor_id,
            entity_id=item_id,
            ip=ip,
            user_agent=user_agent,
            diff={"created": asdict(created)},
        )
        return created

    def update_item(
        self, item_id: int, actor_id: int, ip: str | None = None, user_agent: str | None = None, **fields
    ) -> Item | None:
        """Apply catalogue updates. Returns None when the item does not exist.

        Deactivating an item that is out on loan is allowed: the loan stays
        active until returned, and the item just stops being lendable.
        """
        if not self._store.update_item(item_id, **fields):
            return None
        self._audit.append(
            AuditAction.ITEM_UPDATE,
            "Item",
            actor_id=actor_id,
            entity_id=item_id,
            ip=ip,
            user_agent=user_agent,
            diff={"updated": fields},
        )
        return self._store.get_item(item_id)

    def get_item(self, item_id: int) -> Item | None:
        return self._store.get_item(item_id)

    def search_items(
        self, query: str | None = None, category: str | None = None, is_active: bool | None = None
    ) -> list[Item]:
        return self._store.search_items(query=query, category=category, is_active=is_active)
