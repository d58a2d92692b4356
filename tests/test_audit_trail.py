"""Unit tests for audit/trail.py and audit/store.py.

Covers:
- append() stores every field and returns the entry with its id
- diff payloads with datetimes and enums round through JSON
- query() filters and orders newest first
- append() swallows store failures and logs them
"""

from __future__ import annotations

import logging
from datetime import timedelta

from audit.models import AuditAction
from audit.trail import AuditTrail
from ledger.models import LoanStatus


class TestAppend:
    def test_append_returns_stored_entry(self, audit: AuditTrail, clock) -> None:
        entry = audit.append(
            AuditAction.LOAN_CREATE,
            "Loan",
            actor_id=3,
            entity_id=42,
            ip="192.168.1.20",
            user_agent="desk-terminal",
            diff={"created": {"itemId": 7}},
        )
        assert entry is not None
        assert entry.id is not None
        assert entry.at == clock.now
        assert entry.entity_id == "42"

        stored = audit.query()[0]
        assert stored.id == entry.id
        assert stored.action == AuditAction.LOAN_CREATE
        assert stored.actor_id == 3
        assert stored.ip == "192.168.1.20"
        assert stored.user_agent == "desk-terminal"
        assert stored.diff == {"created": {"itemId": 7}}

    def test_system_entry_has_no_actor(self, audit: AuditTrail) -> None:
        audit.append(AuditAction.LOAN_OVERDUE, "System", diff={"overdueCount": 2})
        stored = audit.query()[0]
        assert stored.actor_id is None
        assert stored.entity_id is None

    def test_diff_with_datetime_and_enum_is_serialized(self, audit: AuditTrail, clock) -> None:
        audit.append(AuditAction.LOAN_RETURN, "Loan", diff={"at": clock.now, "status": LoanStatus.RETURNED})
        stored = audit.query()[0]
        assert stored.diff == {"at": clock.now.isoformat(), "status": "returned"}


class TestQuery:
    def _populate(self, audit: AuditTrail, clock) -> None:
        audit.append(AuditAction.USER_LOGIN, "User", actor_id=1, entity_id=1)
        clock.advance(minutes=1)
        audit.append(AuditAction.LOAN_CREATE, "Loan", actor_id=1, entity_id=10)
        clock.advance(minutes=1)
        audit.append(AuditAction.LOAN_CREATE, "Loan", actor_id=2, entity_id=11)
        clock.advance(minutes=1)
        audit.append(AuditAction.LOAN_RETURN, "Loan", actor_id=2, entity_id=10)

    def test_newest_first(self, audit: AuditTrail, clock) -> None:
        self._populate(audit, clock)
        actions = [e.action for e in audit.query()]
        assert actions == [
            AuditAction.LOAN_RETURN,
            AuditAction.LOAN_CREATE,
            AuditAction.LOAN_CREATE,
            AuditAction.USER_LOGIN,
        ]

    def test_filters_combine(self, audit: AuditTrail, clock) -> None:
        self._populate(audit, clock)
        entries = audit.query(actor_id=2, action=AuditAction.LOAN_CREATE)
        assert [e.entity_id for e in entries] == ["11"]

    def test_entity_filter(self, audit: AuditTrail, clock) -> None:
        self._populate(audit, clock)
        assert len(audit.query(entity="Loan")) == 3
        assert len(audit.query(entity="User")) == 1

    def test_time_window_is_inclusive(self, audit: AuditTrail, clock) -> None:
        start = clock.now
        self._populate(audit, clock)
        entries = audit.query(from_time=start + timedelta(minutes=1), to_time=start + timedelta(minutes=2))
        assert len(entries) == 2

    def test_limit(self, audit: AuditTrail, clock) -> None:
        self._populate(audit, clock)
        assert len(audit.query(limit=2)) == 2


class TestFailureIsolation:
    def test_append_swallows_store_errors(self, broken_audit: AuditTrail, caplog) -> None:
        with caplog.at_level(logging.ERROR, logger="loanledger.audit"):
            result = broken_audit.append(AuditAction.USER_LOGIN, "User", actor_id=1)
        assert result is None
        assert "Failed to write audit entry" in caplog.text
