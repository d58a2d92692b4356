"""
auth/store.py -- SQLAlchemy Core persistence layer for identities.

Pattern: Repository + Data Mapper (same as ledger/store.py).
UserStore is the repository; _row_to_identity is the mapper.
Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Every security-relevant counter change is a single conditional UPDATE so
  two concurrent requests cannot lose an increment or both rotate the same
  refresh token:
    record_failed_login()  -- SET failed_login_attempts = failed_login_attempts + 1
    rotate_refresh_token() -- WHERE refresh_token_id = <the presented jti>

Layer rule: no imports from api/, ledger/, or audit/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, case, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import Identity, Role
from core.clock import from_iso, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized lower-case
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.CLERK.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("refresh_token_id", String(64)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Identity records.

    Usage:
        store = UserStore("sqlite:///loanledger.db")
        store.create_user(Identity(email="admin@example.com", role=Role.ADMIN, hashed_password=hash_password("...")))
        identity = store.get_by_email("Admin@Example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, identity: Identity) -> int:
        """Insert a new identity and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(identity.email),
                    hashed_password=identity.hashed_password,
                    role=Role(identity.role).value,
                    is_active=1 if identity.is_active else 0,
                    failed_login_attempts=0,
                    created_at=to_iso(utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Identity | None:
        """Look up an identity by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, user_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_users(self) -> list[Identity]:
        """Return all identities, newest first. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at.desc(), _users.c.id.desc())).fetchall()
        return [_row_to_identity(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing identity.

        Accepted fields: role, is_active, hashed_password. Role is stored as
        its value; is_active is converted to int for SQLite.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - {"role", "is_active", "hashed_password"}
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of active admins. Used to protect the last admin."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == Role.ADMIN.value) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Login bookkeeping
    # ------------------------------------------------------------------

    def record_failed_login(self, user_id: int, threshold: int, lock_until: datetime) -> int:
        """Atomically count a failed login and lock the account at the threshold.

        Both SET expressions read the pre-update counter, so the lock is set
        by exactly the attempt that reaches the threshold (and by any later
        failure once a previous lock has lapsed). Returns the new counter value.
        """
        attempts = _users.c.failed_login_attempts
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=attempts + 1,
                    locked_until=case((attempts + 1 >= threshold, to_iso(lock_until)), else_=_users.c.locked_until),
                )
            )
            count = conn.execute(select(attempts).where(_users.c.id == user_id)).scalar()
            conn.commit()
        return count or 0

    def record_successful_login(self, user_id: int, at: datetime, refresh_token_id: str) -> None:
        """Clear the lockout state, stamp last_login and install a fresh refresh token id."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=0,
                    locked_until=None,
                    last_login=to_iso(at),
                    refresh_token_id=refresh_token_id,
                )
            )
            conn.commit()

    def rotate_refresh_token(self, user_id: int, current_id: str, new_id: str | None) -> bool:
        """Replace the current refresh token id, but only if it is still current_id.

        Returns False when another request already rotated (or logout cleared)
        the token. Passing new_id=None revokes without replacement.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.refresh_token_id == current_id))
                .values(refresh_token_id=new_id)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=from_iso(row.locked_until),
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
        refresh_token_id=row.refresh_token_id,
    )
