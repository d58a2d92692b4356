"""
API request and response models for LoanLedger REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
ledger/models.py, which own the internal domain representation. Route
handlers map between the two through the from_domain() factory methods
colocated with each response model.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from audit.models import AuditAction, AuditEntry
from auth.models import Identity, Role
from auth.tokens import MAX_PASSWORD_BYTES, password_too_long
from ledger.models import Item, LedgerStats, Loan, LoanStatus, Student

# Deliberately loose: address verification is out of scope, we only need a
# plausible, normalizable login key.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Largest id SQLite can store. Larger values never match a row.
MAX_ID = 2**63 - 1


def _check_password_bytes(value: str) -> str:
    if password_too_long(value):
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    retryable tells a client whether the same request can succeed later
    (rate limit, account lock, internal error) or never will as sent
    (bad credentials, item already on loan, validation failure).
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None
    retryable: bool = False


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=72)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class IdentitySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: Role

    @classmethod
    def from_domain(cls, identity: Identity) -> "IdentitySummary":
        return cls(id=identity.id, email=identity.email, role=identity.role)


class LoginResponse(BaseModel):
    """Body of a successful login. The refresh token travels only in its cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: IdentitySummary


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=72)
    role: Role = Role.CLERK
    is_active: bool = True

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class UserPatch(BaseModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: Role
    is_active: bool
    failed_login_attempts: int
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, identity: Identity) -> "UserResponse":
        # hashed_password and refresh_token_id never leave the store layer.
        return cls(
            id=identity.id,
            email=identity.email,
            role=identity.role,
            is_active=identity.is_active,
            failed_login_attempts=identity.failed_login_attempts,
            locked_until=identity.locked_until,
            last_login=identity.last_login,
            created_at=identity.created_at,
        )


# ---------------------------------------------------------------------------
# Students
# ---------------------------------------------------------------------------


class StudentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    student_no: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    surname: str = Field(min_length=1, max_length=100)
    room_no: Optional[str] = Field(default=None, max_length=20)


class StudentPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    surname: Optional[str] = Field(default=None, min_length=1, max_length=100)
    room_no: Optional[str] = Field(default=None, max_length=20)


class StudentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    student_no: str
    name: str
    surname: str
    room_no: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, student: Student) -> "StudentResponse":
        return cls(
            id=student.id,
            student_no=student.student_no,
            name=student.name,
            surname=student.surname,
            room_no=student.room_no,
            created_at=student.created_at,
        )


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


class ItemCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    category: str = Field(min_length=1, max_length=100)
    specification: Optional[str] = Field(default=None, max_length=2000)
    asset_tag: Optional[str] = Field(default=None, max_length=50)
    is_active: bool = True


class ItemPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    specification: Optional[str] = Field(default=None, max_length=2000)
    asset_tag: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class ItemResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    category: str
    specification: Optional[str] = None
    asset_tag: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, item: Item) -> "ItemResponse":
        return cls(
            id=item.id,
            name=item.name,
            category=item.category,
            specification=item.specification,
            asset_tag=item.asset_tag,
            is_active=item.is_active,
            created_at=item.created_at,
        )


# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------


class LoanCreate(BaseModel):
    """Request body for POST /api/v1/loans.

    The borrower is referenced by student number (what the desk clerk reads
    off the student card), the item by its id.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    student_no: str = Field(min_length=1, max_length=50)
    item_id: int = Field(gt=0, le=MAX_ID)
    destination: str = Field(min_length=1, max_length=255)
    card_received: bool = False
    notes: Optional[str] = Field(default=None, max_length=1000)


class LoanResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    student_id: int
    item_id: int
    destination: str
    card_received: bool
    status: LoanStatus
    taken_at: datetime
    returned_at: Optional[datetime] = None
    created_by_id: int
    closed_by_id: Optional[int] = None
    notes: Optional[str] = None

    @classmethod
    def from_domain(cls, loan: Loan) -> "LoanResponse":
        return cls(
            id=loan.id,
            student_id=loan.student_id,
            item_id=loan.item_id,
            destination=loan.destination,
            card_received=loan.card_received,
            status=loan.status,
            taken_at=loan.taken_at,
            returned_at=loan.returned_at,
            created_by_id=loan.created_by_id,
            closed_by_id=loan.closed_by_id,
            notes=loan.notes,
        )


class StatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items_out: int
    overdue: int
    returns_today: int
    available: int
    total_students: int
    total_items: int

    @classmethod
    def from_domain(cls, stats: LedgerStats) -> "StatsResponse":
        return cls(
            items_out=stats.items_out,
            overdue=stats.overdue,
            returns_today=stats.returns_today,
            available=stats.available,
            total_students=stats.total_students,
            total_items=stats.total_items,
        )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: Optional[int] = None
    action: AuditAction
    entity: str
    entity_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    at: datetime
    diff: Optional[Any] = None

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            action=entry.action,
            entity=entry.entity,
            entity_id=entry.entity_id,
            ip=entry.ip,
            user_agent=entry.user_agent,
            at=entry.at,
            diff=entry.diff,
        )
