"""
audit/store.py -- SQLAlchemy Core persistence for the audit log.

Pattern: Repository + Data Mapper, same as auth/store.py and ledger/store.py.

The repository deliberately has no update or delete method. Append-only is
enforced by the API surface of this class: there is no code path that
rewrites an entry after insert.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from enum import Enum

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from audit.models import AuditAction, AuditEntry
from core.clock import from_iso, to_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),  # NULL for system events
    Column("action", String(30), nullable=False),
    Column("entity", String(50), nullable=False),
    Column("entity_id", String(64)),
    Column("ip", String(45)),
    Column("user_agent", Text),
    Column("at", String(32), nullable=False),
    Column("diff", Text),  # JSON document
    Index("ix_audit_log_actor", "actor_id"),
    Index("ix_audit_log_action", "action"),
    Index("ix_audit_log_entity", "entity", "entity_id"),
    Index("ix_audit_log_at", "at"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _json_default(value):
    """json.dumps fallback for the types that show up in ledger snapshots."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditStore:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def insert(self, entry: AuditEntry) -> int:
        """Write one entry and return its id. Raises on any store failure."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    actor_id=entry.actor_id,
                    action=AuditAction(entry.action).value,
                    entity=entry.entity,
                    entity_id=entry.entity_id,
                    ip=entry.ip,
                    user_agent=entry.user_agent,
                    at=to_iso(entry.at),
                    diff=json.dumps(entry.diff, default=_json_default) if entry.diff is not None else None,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def select(
        self,
        actor_id: int | None = None,
        action: AuditAction | None = None,
        entity: str | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
        limit: int = 500,
    ) -> list[AuditEntry]:
        """Return entries matching every given filter, newest first.

        from_time / to_time are inclusive bounds on the entry timestamp.
        """
        stmt = _audit_log.select()
        if actor_id is not None:
            stmt = stmt.where(_audit_log.c.actor_id == actor_id)
        if action is not None:
            stmt = stmt.where(_audit_log.c.action == AuditAction(action).value)
        if entity is not None:
            stmt = stmt.where(_audit_log.c.entity == entity)
        if from_time is not None:
            stmt = stmt.where(_audit_log.c.at >= to_iso(from_time))
        if to_time is not None:
            stmt = stmt.where(_audit_log.c.at <= to_iso(to_time))
        stmt = stmt.order_by(_audit_log.c.at.desc(), _audit_log.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        actor_id=row.actor_id,
        action=AuditAction(row.action),
        entity=row.entity,
        entity_id=row.entity_id,
        ip=row.ip,
        user_agent=row.user_agent,
        at=from_iso(row.at),
        diff=json.loads(row.diff) if row.diff else None,
    )
