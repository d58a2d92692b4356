"""
api/routes/v1/stats.py -- Dashboard counters.

Routes:
  GET /api/v1/stats  -- ?tz_offset_minutes= picks the local day for returns_today (any role)
"""


from fastapi import APIRouter, Depends, Query, Request

from api.models import StatsResponse
from auth.dependencies import require_any_role
from auth.models import Identity
from ledger.service import LoanLedger

router = APIRouter()


@router.get("/stats", response_model=StatsResponse)
def stats(
    request: Request,
    # UTC-12:00 .. UTC+14:00
    tz_offset_minutes: int = Query(default=0, ge=-720, le=840),
    current: Identity = Depends(require_any_role),
) -> StatsResponse:
    ledger: LoanLedger = request.app.state.ledger
    return StatsResponse.from_domain(ledger.compute_stats(tz_offset_minutes))
