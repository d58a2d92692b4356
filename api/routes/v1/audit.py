"""
api/routes/v1/audit.py -- Read access to the audit trail.

Routes:
  GET /api/v1/audit  -- filter by ?actor_id=&action=&entity=&from=&to=&limit= (any role)

The trail is append-only; there is no write endpoint.
"""


from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import MAX_ID, AuditEntryResponse
from audit.models import AuditAction
from audit.trail import AuditTrail
from auth.dependencies import require_any_role
from auth.models import Identity

router = APIRouter()


@router.get("/audit", response_model=list[AuditEntryResponse])
def query_audit(
    request: Request,
    actor_id: Optional[int] = Query(default=None, gt=0, le=MAX_ID),
    action: Optional[AuditAction] = None,
    entity: Optional[str] = Query(default=None, max_length=50),
    from_time: Optional[datetime] = Query(default=None, alias="from"),
    to_time: Optional[datetime] = Query(default=None, alias="to"),
    limit: int = Query(default=500, ge=1, le=5000),
    current: Identity = Depends(require_any_role),
) -> list[AuditEntryResponse]:
    """Return matching audit entries, newest first."""
    audit: AuditTrail = request.app.state.audit
    entries = audit.query(
        actor_id=actor_id,
        action=action,
        entity=entity,
        from_time=from_time,
        to_time=to_time,
        limit=limit,
    )
    return [AuditEntryResponse.from_domain(e) for e in entries]
