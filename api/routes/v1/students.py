"""
api/routes/v1/students.py -- Borrower registry endpoints.

Routes:
  GET   /api/v1/students              -- list, or search with ?query= (any role)
  GET   /api/v1/students/{id}         -- detail (any role)
  POST  /api/v1/students              -- register a borrower (clerk or admin)
  PATCH /api/v1/students/{id}         -- update name / surname / room (clerk or admin)

student_no is immutable once registered; loans reference it at the desk.
"""


from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.exc import IntegrityError

from api.errors import client_meta, patch_fields, raise_conflict, raise_no_changes, raise_not_found
from api.limiter import limiter, mutation_limit
from api.models import MAX_ID, StudentCreate, StudentPatch, StudentResponse
from auth.dependencies import require_any_role, require_clerk_or_admin
from auth.models import Identity
from ledger.models import Student
from ledger.service import LoanLedger

router = APIRouter()


@router.get("/students", response_model=list[StudentResponse])
def list_students(
    request: Request,
    query: Optional[str] = Query(default=None, max_length=100),
    current: Identity = Depends(require_any_role),
) -> list[StudentResponse]:
    ledger: LoanLedger = request.app.state.ledger
    return [StudentResponse.from_domain(s) for s in ledger.search_students(query)]


@router.get("/students/{student_id}", response_model=StudentResponse)
def get_student(
    request: Request,
    student_id: int = Path(gt=0, le=MAX_ID),
    current: Identity = Depends(require_any_role),
) -> StudentResponse:
    ledger: LoanLedger = request.app.state.ledger
    student = ledger.get_student(student_id)
    if student is None:
        raise_not_found("Student not found.")
    return StudentResponse.from_domain(student)


@router.post("/students", response_model=StudentResponse, status_code=201)
@limiter.limit(mutation_limit)
def create_student(
    request: Request,
    body: StudentCreate,
    current: Identity = Depends(require_clerk_or_admin),
) -> StudentResponse:
    ledger: LoanLedger = request.app.state.ledger
    ip, user_agent = client_meta(request)
    try:
        student = ledger.create_student(
            Student(student_no=body.student_no, name=body.name, surname=body.surname, room_no=body.room_no),
            actor_id=current.id,
            ip=ip,
            user_agent=user_agent,
        )
    except IntegrityError:
        raise_conflict("A student with that number already exists.")
    return StudentResponse.from_domain(student)


@router.patch("/students/{student_id}", response_model=StudentResponse)
@limiter.limit(mutation_limit)
def update_student(
    request: Request,
    body: StudentPatch,
    student_id: int = Path(gt=0, le=MAX_ID),
    current: Identity = Depends(require_clerk_or_admin),
) -> StudentResponse:
    ledger: LoanLedger = request.app.state.ledger
    fields = patch_fields(body, nullable=frozenset({"room_no"}))
    if not fields:
        raise_no_changes()
    ip, user_agent = client_meta(request)
    student = ledger.update_student(student_id, actor_id=current.id, ip=ip, user_agent=user_agent, **fields)
    if student is None:
        raise_not_found("Student not found.")
    return StudentResponse.from_domain(student)
