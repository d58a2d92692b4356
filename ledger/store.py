"""
ledger/store.py -- SQLAlchemy-backed persistence for students, items and loans.

Uses SQLAlchemy Core (not ORM) so the dataclasses in ledger/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Pattern: Repository + Data Mapper. LedgerStore is the repository; the
_row_to_* functions are the mappers.

Concurrency guarantees live in the schema and in single-statement updates,
never in read-then-write sequences:

  uq_loans_active_item -- unique partial index on loans(item_id) restricted
      to status IN ('taken', 'overdue'). Two concurrent inserts of an active
      loan for the same item cannot both commit; the loser gets
      IntegrityError, which the service maps to ITEM_ALREADY_ON_LOAN.

  close_loan() -- UPDATE ... WHERE status IN (taken, overdue) AND
      returned_at IS NULL. A return and a sweep racing on the same row
      cannot resurrect a returned loan as overdue, and a loan cannot be
      returned twice.

  mark_overdue() -- UPDATE ... WHERE status = taken AND taken_at <= cutoff
      AND returned_at IS NULL, in one batch.

_active_loan_exists() is the single definition of "item is on loan". The
availability listing, the availability count in stats and the create-loan
pre-check all use it, so "shown as available" and "rejected as already on
loan" cannot disagree.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine

from core.clock import from_iso, to_iso, utcnow
from ledger.models import ACTIVE_STATUSES, Item, Loan, LoanStatus, Student

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_students = Table(
    "students",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("student_no", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("surname", String(100), nullable=False),
    Column("room_no", String(20)),
    Column("created_at", String(32), nullable=False),
    Index("ix_students_name", "name", "surname"),
)

_items = Table(
    "items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("category", String(100), nullable=False),
    Column("specification", Text),
    Column("asset_tag", String(50), unique=True),  # NULLs do not collide
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Index("ix_items_category", "category"),
)

_loans = Table(
    "loans",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("student_id", Integer, nullable=False),
    Column("item_id", Integer, nullable=False),
    Column("destination", String(255), nullable=False),
    Column("card_received", Integer, nullable=False, server_default="0"),
    Column("taken_at", String(32), nullable=False),
    Column("returned_at", String(32)),
    Column("status", String(20), nullable=False, server_default=LoanStatus.TAKEN.value),
    Column("notes", Text),
    Column("created_by_id", Integer, nullable=False),
    Column("closed_by_id", Integer),
    Index("ix_loans_status_taken_at", "status", "taken_at"),
    Index("ix_loans_student", "student_id"),
    Index("ix_loans_item", "item_id"),
    Index(
        "uq_loans_active_item",
        "item_id",
        unique=True,
        sqlite_where=text("status IN ('taken', 'overdue')"),
        postgresql_where=text("status IN ('taken', 'overdue')"),
    ),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block the single writer."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _active_loan_exists(item_id_column):
    """EXISTS clause: some loan for this item is taken or overdue."""
    return (
        select(_loans.c.id)
        .where((_loans.c.item_id == item_id_column) & _loans.c.status.in_(_ACTIVE_VALUES))
        .exists()
    )


def _available_items_clause():
    return (_items.c.is_active == 1) & ~_active_loan_exists(_items.c.id)


def _count(conn: Connection, table: Table, *conditions) -> int:
    stmt = select(func.count()).select_from(table)
    for condition in conditions:
        stmt = stmt.where(condition)
    return conn.execute(stmt).scalar() or 0


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LedgerStore:
    _STUDENT_FIELDS = {"name", "surname", "room_no"}
    _ITEM_FIELDS = {"name", "category", "specification", "asset_tag", "is_active"}

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers run in FastAPI's thread pool and the sweeper in a
            # worker thread; pooled connections cross threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    def create_student(self, student: Student) -> int:
        """Insert a student and return its ID.

        Raises sqlalchemy.exc.IntegrityError if student_no already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _students.insert().values(
                    student_no=student.student_no.strip(),
                    name=student.name,
                    surname=student.surname,
                    room_no=student.room_no,
                    created_at=to_iso(utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_student(self, student_id: int) -> Student | None:
        with self.engine.connect() as conn:
            row = conn.execute(_students.select().where(_students.c.id == student_id)).fetchone()
        return _row_to_student(row) if row is not None else None

    def get_student_by_no(self, student_no: str) -> Student | None:
        """Look up a student by exact student number."""
        with self.engine.connect() as conn:
            row = conn.execute(_students.select().where(_students.c.student_no == student_no.strip())).fetchone()
        return _row_to_student(row) if row is not None else None

    def list_students(self) -> list[Student]:
        with self.engine.connect() as conn:
            rows = conn.execute(_students.select().order_by(_students.c.name, _students.c.surname)).fetchall()
        return [_row_to_student(r) for r in rows]

    def search_students(self, query: str) -> list[Student]:
        """Case-insensitive substring match on number, name, surname and room."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _students.select()
                .where(
                    or_(
                        _students.c.student_no.icontains(query, autoescape=True),
                        _students.c.name.icontains(query, autoescape=True),
                        _students.c.surname.icontains(query, autoescape=True),
                        _students.c.room_no.icontains(query, autoescape=True),
                    )
                )
                .order_by(_students.c.name, _students.c.surname)
            ).fetchall()
        return [_row_to_student(r) for r in rows]

    def update_student(self, student_id: int, **fields) -> bool:
        """Update name, surname or room_no. Returns False if student_id was not found."""
        unknown = set(fields) - self._STUDENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown student fields: {unknown!r}")
        with self.engine.connect() as conn:
            result = conn.execute(_students.update().where(_students.c.id == student_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def create_item(self, item: Item) -> int:
        """Insert an item and return its ID.

        Raises sqlalchemy.exc.IntegrityError if asset_tag is already in use.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _items.insert().values(
                    name=item.name,
                    category=item.category,
                    specification=item.specification,
                    asset_tag=item.asset_tag or None,
                    is_active=1 if item.is_active else 0,
                    created_at=to_iso(utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_item(self, item_id: int) -> Item | None:
        with self.engine.connect() as conn:
            row = conn.execute(_items.select().where(_items.c.id == item_id)).fetchone()
        return _row_to_item(row) if row is not None else None

    def get_item_by_asset_tag(self, asset_tag: str) -> Item | None:
        with self.engine.connect() as conn:
            row = conn.execute(_items.select().where(_items.c.asset_tag == asset_tag)).fetchone()
        return _row_to_item(row) if row is not None else None

    def search_items(
        self,
        query: str | None = None,
        category: str | None = None,
        is_active: bool | None = None,
    ) -> list[Item]:
        """Return items matching every given filter, ordered by category then name."""
        stmt = _items.select()
        if query:
            stmt = stmt.where(
                or_(
                    _items.c.name.icontains(query, autoescape=True),
                    _items.c.specification.icontains(query, autoescape=True),
                    _items.c.asset_tag.icontains(query, autoescape=True),
                )
            )
        if category:
            stmt = stmt.where(_items.c.category == category)
        if is_active is not None:
            stmt = stmt.where(_items.c.is_active == (1 if is_active else 0))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_items.c.category, _items.c.name)).fetchall()
        return [_row_to_item(r) for r in rows]

    def list_available_items(self) -> list[Item]:
        """Active items with no taken or overdue loan."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _items.select().where(_available_items_clause()).order_by(_items.c.category, _items.c.name)
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def update_item(self, item_id: int, **fields) -> bool:
        """Update catalogue fields. Returns False if item_id was not found.

        Raises sqlalchemy.exc.IntegrityError on an asset_tag collision.
        """
        unknown = set(fields) - self._ITEM_FIELDS
        if unknown:
            raise ValueError(f"Unknown item fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "asset_tag" in fields:
            fields["asset_tag"] = fields["asset_tag"] or None
        with self.engine.connect() as conn:
            result = conn.execute(_items.update().where(_items.c.id == item_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    def has_active_loan(self, item_id: int) -> bool:
        with self.engine.connect() as conn:
            return bool(conn.execute(select(_active_loan_exists(item_id))).scalar())

    def insert_loan(self, loan: Loan) -> int:
        """Insert a new active loan and return its ID.

        Raises sqlalchemy.exc.IntegrityError when the item already has an
        active loan (uq_loans_active_item).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _loans.insert().values(
                    student_id=loan.student_id,
                    item_id=loan.item_id,
                    destination=loan.destination,
                    card_received=1 if loan.card_received else 0,
                    taken_at=to_iso(loan.taken_at),
                    status=LoanStatus(loan.status).value,
                    notes=loan.notes,
                    created_by_id=loan.created_by_id,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_loan(self, loan_id: int) -> Loan | None:
        with self.engine.connect() as conn:
            row = conn.execute(_loans.select().where(_loans.c.id == loan_id)).fetchone()
        return _row_to_loan(row) if row is not None else None

    def close_loan(self, loan_id: int, closed_by_id: int, at: datetime) -> bool:
        """Transition an active loan to returned in one conditional UPDATE.

        Returns False when the loan does not exist or is already returned;
        the caller reads the row to tell the two apart.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _loans.update()
                .where(
                    (_loans.c.id == loan_id)
                    & _loans.c.status.in_(_ACTIVE_VALUES)
                    & _loans.c.returned_at.is_(None)
                )
                .values(
                    status=LoanStatus.RETURNED.value,
                    returned_at=to_iso(at),
                    closed_by_id=closed_by_id,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def mark_overdue(self, cutoff: datetime) -> int:
        """Flip every taken loan with taken_at <= cutoff to overdue. Returns the row count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _loans.update()
                .where(
                    (_loans.c.status == LoanStatus.TAKEN.value)
                    & (_loans.c.taken_at <= to_iso(cutoff))
                    & _loans.c.returned_at.is_(None)
                )
                .values(status=LoanStatus.OVERDUE.value)
            )
            conn.commit()
        return result.rowcount or 0

    def list_loans(
        self,
        status: LoanStatus | None = None,
        statuses: tuple[LoanStatus, ...] | None = None,
        student_id: int | None = None,
        item_id: int | None = None,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[Loan]:
        """Return loans matching every given filter, newest taken_at first.

        from_time / to_time bound taken_at inclusively.
        """
        stmt = _loans.select()
        if status is not None:
            stmt = stmt.where(_loans.c.status == LoanStatus(status).value)
        if statuses:
            stmt = stmt.where(_loans.c.status.in_([LoanStatus(s).value for s in statuses]))
        if student_id is not None:
            stmt = stmt.where(_loans.c.student_id == student_id)
        if item_id is not None:
            stmt = stmt.where(_loans.c.item_id == item_id)
        if from_time is not None:
            stmt = stmt.where(_loans.c.taken_at >= to_iso(from_time))
        if to_time is not None:
            stmt = stmt.where(_loans.c.taken_at <= to_iso(to_time))
        stmt = stmt.order_by(_loans.c.taken_at.desc(), _loans.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_loan(r) for r in rows]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def counts(self, returns_from: datetime, returns_until: datetime) -> dict[str, int]:
        """Return the dashboard counters, read over a single connection.

        returns_today counts returns with returned_at in [returns_from, returns_until).
        """
        with self.engine.connect() as conn:
            return {
                "items_out": _count(conn, _loans, _loans.c.status.in_(_ACTIVE_VALUES)),
                "overdue": _count(conn, _loans, _loans.c.status == LoanStatus.OVERDUE.value),
                "returns_today": _count(
                    conn,
                    _loans,
                    _loans.c.status == LoanStatus.RETURNED.value,
                    _loans.c.returned_at >= to_iso(returns_from),
                    _loans.c.returned_at < to_iso(returns_until),
                ),
                "available": _count(conn, _items, _available_items_clause()),
                "total_students": _count(conn, _students),
                "total_items": _count(conn, _items, _items.c.is_active == 1),
            }

    def ping(self) -> None:
        """Round-trip a trivial query. Raises on a broken connection."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_student(row) -> Student:
    return Student(
        id=row.id,
        student_no=row.student_no,
        name=row.name,
        surname=row.surname,
        room_no=row.room_no,
        created_at=from_iso(row.created_at),
    )


def _row_to_item(row) -> Item:
    return Item(
        id=row.id,
        name=row.name,
        category=row.category,
        specification=row.specification,
        asset_tag=row.asset_tag,
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
    )


def _row_to_loan(row) -> Loan:
    return Loan(
        id=row.id,
        student_id=row.student_id,
        item_id=row.item_id,
        destination=row.destination,
        card_received=bool(row.card_received),
        taken_at=from_iso(row.taken_at),
        returned_at=from_iso(row.returned_at),
        status=LoanStatus(row.status),
        notes=row.notes,
        created_by_id=row.created_by_id,
        closed_by_id=row.closed_by_id,
    )
