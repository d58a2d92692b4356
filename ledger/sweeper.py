"""
ledger/sweeper.py -- Periodic overdue sweep as an explicit task object.

OverdueSweeper is constructed with its configuration and does nothing until
start() is called from a running event loop (the FastAPI lifespan). stop()
signals the loop and awaits it, so tests and shutdown can wait for the task
to finish deterministically instead of relying on cancellation timing.

Each run is one batched conditional UPDATE (LedgerStore.mark_overdue), so a
run is idempotent and safe to overlap with returns: a loan returned a moment
before the sweep no longer matches status = taken / returned_at IS NULL.

The database call is synchronous SQLAlchemy; it runs in a worker thread via
asyncio.to_thread so the event loop keeps serving requests during a sweep.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from audit.models import AuditAction
from audit.trail import AuditTrail
from core.clock import Clock, utcnow
from ledger.store import LedgerStore

logger = logging.getLogger("loanledger.sweeper")


class OverdueSweeper:
    def __init__(
        self,
        store: LedgerStore,
        audit: AuditTrail,
        max_loan_hours: int,
        interval_seconds: float,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self.max_loan_hours = max_loan_hours
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._stopping: asyncio.Event | None = None

    def run_once(self) -> int:
        """Mark stale taken loans overdue. Returns how many loans changed.

        Writes one LOAN_OVERDUE audit entry per run that changed anything;
        empty runs write nothing.
        """
        cutoff = self._clock() - timedelta(hours=self.max_loan_hours)
        count = self._store.mark_overdue(cutoff)
        if count > 0:
            logger.info("Marked %d loans as overdue", count)
            self._audit.append(
                AuditAction.LOAN_OVERDUE,
                "System",
                diff={"overdueCount": count, "maxLoanHours": self.max_loan_hours},
            )
        return count

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the periodic loop on the running event loop."""
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="overdue-sweeper")
        logger.info(
            "Overdue sweeper started (interval=%ss, max_loan_hours=%d)", self.interval_seconds, self.max_loan_hours
        )

    async def stop(self) -> None:
        """Ask the loop to exit and wait for it."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Overdue sweeper stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                # One failed run must not end the schedule.
                logger.exception("Error checking for overdue loans")
