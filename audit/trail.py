"""
audit/trail.py -- The append-only audit trail used by every other component.

append() never raises. An audit write that fails is written to the
operational log and dropped: a broken audit table must not fail a login or
roll back a loan that has already been committed. query() is for operator
review and does propagate store errors.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any

from audit.models import AuditAction, AuditEntry
from audit.store import AuditStore
from core.clock import Clock, utcnow

logger = logging.getLogger("loanledger.audit")


class AuditTrail:
    def __init__(self, store: AuditStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    def append(
        self,
        action: AuditAction,
        entity: str,
        actor_id: int | None = None,
        entity_id: Any = None,
        ip: str | None = None,
        user_agent: str | None = None,
        diff: Any = None,
    ) -> AuditEntry | None:
        """Record an event. Returns the stored entry, or None if the write failed."""
        entry = AuditEntry(
            action=action,
            entity=entity,
            at=self._clock(),
            actor_id=actor_id,
            entity_id=str(entity_id) if entity_id is not None else None,
            ip=ip,
            user_agent=user_agent,
            diff=diff,
        )
        try:
            entry_id = self._store.insert(entry)
        except Exception:
            logger.exception("Failed to write audit entry %s for %s %s", action, entity, entry.entity_id)
            return None
        return replace(entry, id=entry_id)

    def query(
        self,
        actor_id: int | None = None,
        action: AuditAction | None = None,
        entity: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        limit: int = 500,
    ) -> list[AuditEntry]:
        """Return matching entries, newest first."""
        return self._store.select(
            actor_id=actor_id,
            action=action,
            entity=entity,
            from_time=from_time,
            to_time=to_time,
            limit=limit,
        )
