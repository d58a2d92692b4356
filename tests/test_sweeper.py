"""Tests for ledger/sweeper.py -- overdue marking and the periodic task lifecycle.

Covers:
- run_once() marks only taken loans older than max_loan_hours
- a second run changes nothing (idempotent)
- returned loans are never resurrected as overdue
- one LOAN_OVERDUE audit entry per run that changed something, none otherwise
- start() / stop() lifecycle on a real event loop, including a periodic run
- a failing run is logged and does not end the schedule
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from audit.models import AuditAction
from audit.store import AuditStore
from audit.trail import AuditTrail
from ledger.models import Item, Loan, LoanStatus, Student
from ledger.service import LoanLedger
from ledger.store import LedgerStore
from ledger.sweeper import OverdueSweeper


@pytest.fixture
def ledger(ledger_store, audit, clock) -> LoanLedger:
    ledger = LoanLedger(ledger_store, audit, clock=clock)
    ledger.create_student(Student(student_no="STU001", name="John", surname="Smith"), actor_id=1)
    return ledger


@pytest.fixture
def sweeper(ledger_store, audit, clock) -> OverdueSweeper:
    return OverdueSweeper(ledger_store, audit, max_loan_hours=4, interval_seconds=600, clock=clock)


def _lend(ledger: LoanLedger, name: str) -> Loan:
    item = ledger.create_item(Item(name=name, category="Electronics"), actor_id=1)
    loan = ledger.create_loan("STU001", item.id, "Library", False, None, creator_id=2)
    assert isinstance(loan, Loan)
    return loan


class TestRunOnce:
    def test_marks_only_stale_taken_loans(self, ledger, sweeper, clock) -> None:
        old = _lend(ledger, "Calculator")
        clock.advance(hours=3)
        fresh = _lend(ledger, "Mouse")
        clock.advance(hours=1, seconds=1)

        assert sweeper.run_once() == 1
        assert ledger.get_loan(old.id).status == LoanStatus.OVERDUE
        assert ledger.get_loan(fresh.id).status == LoanStatus.TAKEN

    def test_exact_boundary_is_overdue(self, ledger, sweeper, clock) -> None:
        loan = _lend(ledger, "Calculator")
        clock.advance(hours=4)
        assert sweeper.run_once() == 1
        assert ledger.get_loan(loan.id).status == LoanStatus.OVERDUE

    def test_second_run_is_a_no_op(self, ledger, sweeper, clock) -> None:
        _lend(ledger, "Calculator")
        clock.advance(hours=5)
        assert sweeper.run_once() == 1
        assert sweeper.run_once() == 0

    def test_returned_loans_are_untouched(self, ledger, sweeper, clock) -> None:
        loan = _lend(ledger, "Calculator")
        ledger.return_loan(loan.id, closer_id=2)
        clock.advance(hours=10)
        assert sweeper.run_once() == 0
        assert ledger.get_loan(loan.id).status == LoanStatus.RETURNED

    def test_audit_entry_only_when_something_changed(self, ledger, sweeper, audit, clock) -> None:
        assert sweeper.run_once() == 0
        assert audit.query(action=AuditAction.LOAN_OVERDUE) == []

        _lend(ledger, "Calculator")
        _lend(ledger, "Mouse")
        clock.advance(hours=5)
        sweeper.run_once()
        sweeper.run_once()

        entries = audit.query(action=AuditAction.LOAN_OVERDUE)
        assert len(entries) == 1
        assert entries[0].actor_id is None
        assert entries[0].entity == "System"
        assert entries[0].diff == {"overdueCount": 2, "maxLoanHours": 4}

    def test_marks_overdue_when_audit_store_fails(self, ledger, ledger_store, broken_audit, clock) -> None:
        loan = _lend(ledger, "Calculator")
        clock.advance(hours=5)
        sweeper = OverdueSweeper(ledger_store, broken_audit, max_loan_hours=4, interval_seconds=600, clock=clock)
        assert sweeper.run_once() == 1
        assert ledger_store.get_loan(loan.id).status == LoanStatus.OVERDUE


class TestLifecycle:
    def test_start_and_stop(self, sweeper) -> None:
        async def scenario() -> None:
            assert not sweeper.running
            sweeper.start()
            assert sweeper.running
            await sweeper.stop()
            assert not sweeper.running

        asyncio.run(scenario())

    def test_stop_without_start_is_harmless(self, sweeper) -> None:
        asyncio.run(sweeper.stop())
        assert not sweeper.running

    def test_periodic_run_happens(self, tmp_path, clock) -> None:
        """With a tiny interval the loop sweeps on its own before stop()."""
        # File-backed: the sweep runs in a worker thread with its own connection.
        url = f"sqlite:///{tmp_path / 'sweep.db'}"
        store, audit_store = LedgerStore(url), AuditStore(url)
        audit = AuditTrail(audit_store, clock=clock)
        ledger = LoanLedger(store, audit, clock=clock)
        ledger.create_student(Student(student_no="STU001", name="John", surname="Smith"), actor_id=1)
        loan = _lend(ledger, "Calculator")
        clock.advance(hours=5)
        sweeper = OverdueSweeper(store, audit, max_loan_hours=4, interval_seconds=0.01, clock=clock)

        async def scenario() -> None:
            sweeper.start()
            for _ in range(200):
                if ledger.get_loan(loan.id).status == LoanStatus.OVERDUE:
                    break
                await asyncio.sleep(0.01)
            await sweeper.stop()

        try:
            asyncio.run(scenario())
            assert ledger.get_loan(loan.id).status == LoanStatus.OVERDUE
        finally:
            store.close()
            audit_store.close()

    def test_failing_run_is_logged_and_loop_continues(self, sweeper, monkeypatch, caplog) -> None:
        calls = []

        def broken() -> int:
            calls.append(1)
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(sweeper, "run_once", broken)
        sweeper.interval_seconds = 0.01

        async def scenario() -> None:
            sweeper.start()
            for _ in range(200):
                if len(calls) >= 2:
                    break
                await asyncio.sleep(0.01)
            assert sweeper.running
            await sweeper.stop()

        with caplog.at_level(logging.ERROR, logger="loanledger.sweeper"):
            asyncio.run(scenario())
        assert len(calls) >= 2
        assert "Error checking for overdue loans" in caplog.text
