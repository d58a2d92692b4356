"""
api/routes/v1/loans.py -- Loan ledger endpoints.

Routes:
  GET  /api/v1/loans               -- filter by ?status=&student_id=&item_id=&from=&to= (any role)
  GET  /api/v1/loans/active        -- taken + overdue loans (any role)
  GET  /api/v1/loans/overdue       -- overdue loans (any role)
  GET  /api/v1/loans/{id}          -- detail (any role)
  POST /api/v1/loans               -- open a loan (clerk or admin)
  POST /api/v1/loans/{id}/return   -- close a loan (clerk or admin)

Role checks run in the dependency, before the ledger is touched, so a denied
caller leaves neither a loan nor an audit entry behind.
"""


from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request

from api.errors import client_meta, raise_ledger_error, raise_not_found
from api.limiter import limiter, mutation_limit
from api.models import MAX_ID, LoanCreate, LoanResponse
from auth.dependencies import require_any_role, require_clerk_or_admin
from auth.models import Identity
from ledger.models import LedgerError, LoanStatus
from ledger.service import LoanLedger

router = APIRouter()


@router.get("/loans", response_model=list[LoanResponse])
def list_loans(
    request: Request,
    status: Optional[LoanStatus] = None,
    student_id: Optional[int] = Query(default=None, gt=0, le=MAX_ID),
    item_id: Optional[int] = Query(default=None, gt=0, le=MAX_ID),
    from_time: Optional[datetime] = Query(default=None, alias="from"),
    to_time: Optional[datetime] = Query(default=None, alias="to"),
    current: Identity = Depends(require_any_role),
) -> list[LoanResponse]:
    """List loans, newest first. from / to bound taken_at inclusively."""
    ledger: LoanLedger = request.app.state.ledger
    loans = ledger.list_loans(
        status=status, student_id=student_id, item_id=item_id, from_time=from_time, to_time=to_time
    )
    return [LoanResponse.from_domain(loan) for loan in loans]


@router.get("/loans/active", response_model=list[LoanResponse])
def list_active_loans(request: Request, current: Identity = Depends(require_any_role)) -> list[LoanResponse]:
    ledger: LoanLedger = request.app.state.ledger
    return [LoanResponse.from_domain(loan) for loan in ledger.list_active_loans()]


@router.get("/loans/overdue", response_model=list[LoanResponse])
def list_overdue_loans(request: Request, current: Identity = Depends(require_any_role)) -> list[LoanResponse]:
    ledger: LoanLedger = request.app.state.ledger
    return [LoanResponse.from_domain(loan) for loan in ledger.list_overdue_loans()]


@router.get("/loans/{loan_id}", response_model=LoanResponse)
def get_loan(
    request: Request,
    loan_id: int = Path(gt=0, le=MAX_ID),
    current: Identity = Depends(require_any_role),
) -> LoanResponse:
    ledger: LoanLedger = request.app.state.ledger
    loan = ledger.get_loan(loan_id)
    if loan is None:
        raise_not_found("Loan not found.")
    return LoanResponse.from_domain(loan)


@router.post("/loans", response_model=LoanResponse, status_code=201)
@limiter.limit(mutation_limit)
def create_loan(
    request: Request,
    body: LoanCreate,
    current: Identity = Depends(require_clerk_or_admin),
) -> LoanResponse:
    """Hand an item to a student.

    404 student_not_found when the student is not registered, 409
    item_unavailable for a missing or inactive item, 409 item_already_on_loan
    when the item is out (including when a concurrent request won the race).
    """
    ledger: LoanLedger = request.app.state.ledger
    ip, user_agent = client_meta(request)
    result = ledger.create_loan(
        student_no=body.student_no,
        item_id=body.item_id,
        destination=body.destination,
        card_received=body.card_received,
        notes=body.notes,
        creator_id=current.id,
        ip=ip,
        user_agent=user_agent,
    )
    if isinstance(result, LedgerError):
        raise_ledger_error(result)
    return LoanResponse.from_domain(result)


@router.post("/loans/{loan_id}/return", response_model=LoanResponse)
@limiter.limit(mutation_limit)
def return_loan(
    request: Request,
    loan_id: int = Path(gt=0, le=MAX_ID),
    current: Identity = Depends(require_clerk_or_admin),
) -> LoanResponse:
    """Close an active loan. 404 not_found, or 409 already_returned on a repeat."""
    ledger: LoanLedger = request.app.state.ledger
    ip, user_agent = client_meta(request)
    result = ledger.return_loan(loan_id, closer_id=current.id, ip=ip, user_agent=user_agent)
    if isinstance(result, LedgerError):
        raise_ledger_error(result)
    return LoanResponse.from_domain(result)
