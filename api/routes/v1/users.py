"""
api/routes/v1/users.py -- Identity management (admin only).

Routes:
  GET   /api/v1/users        -- list identities
  POST  /api/v1/users        -- create an identity
  PATCH /api/v1/users/{id}   -- change role / is_active

Security:
  [M4] PATCH blocks self-deactivation and last-admin deactivation/demotion.
  Password hashes never appear in responses or audit diffs.
"""


from fastapi import APIRouter, Depends, HTTPException, Path, Request
from sqlalchemy.exc import IntegrityError

from api.errors import client_meta, error_detail, raise_no_changes, raise_not_found
from api.limiter import limiter, mutation_limit
from api.models import MAX_ID, UserCreate, UserPatch, UserResponse
from audit.models import AuditAction
from audit.trail import AuditTrail
from auth.dependencies import require_admin
from auth.models import Identity, Role
from auth.store import UserStore
from auth.tokens import hash_password

router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, current: Identity = Depends(require_admin)) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_domain(u) for u in user_store.list_users()]


@router.post("/users", response_model=UserResponse, status_code=201)
@limiter.limit(mutation_limit)
def create_user(request: Request, body: UserCreate, current: Identity = Depends(require_admin)) -> UserResponse:
    """Create an identity. 409 when the (normalized) email is taken."""
    user_store: UserStore = request.app.state.user_store
    audit: AuditTrail = request.app.state.audit

    identity = Identity(
        email=body.email,
        role=body.role,
        hashed_password=hash_password(body.password),
        is_active=body.is_active,
    )
    try:
        user_id = user_store.create_user(identity)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail=error_detail("conflict", "A user with that email already exists."),
        ) from exc

    created = user_store.get_by_id(user_id)
    ip, user_agent = client_meta(request)
    audit.append(
        AuditAction.USER_CREATE,
        "User",
        actor_id=current.id,
        entity_id=user_id,
        ip=ip,
        user_agent=user_agent,
        diff={"created": {"email": created.email, "role": created.role, "isActive": created.is_active}},
    )
    return UserResponse.from_domain(created)


@router.patch("/users/{user_id}", response_model=UserResponse)
@limiter.limit(mutation_limit)
def update_user(
    request: Request,
    body: UserPatch,
    user_id: int = Path(gt=0, le=MAX_ID),
    current: Identity = Depends(require_admin),
) -> UserResponse:
    """Update role and/or active status.

    [M4] Refuses:
      - Self-deactivation (admin accidentally locking themselves out).
      - Removing the last active admin, by deactivation or demotion.
    """
    user_store: UserStore = request.app.state.user_store
    audit: AuditTrail = request.app.state.audit

    target = user_store.get_by_id(user_id)
    if target is None:
        raise_not_found("User not found.")

    updates: dict = {}
    if body.is_active is not None and body.is_active != target.is_active:
        if not body.is_active and target.id == current.id:
            raise HTTPException(
                status_code=400,
                detail=error_detail("self_deactivation", "You cannot deactivate your own account."),
            )
        updates["is_active"] = body.is_active
    if body.role is not None and body.role != target.role:
        updates["role"] = body.role

    if not updates:
        raise_no_changes()

    removes_admin = target.role == Role.ADMIN and target.is_active and (
        updates.get("is_active") is False or updates.get("role", Role.ADMIN) != Role.ADMIN
    )
    if removes_admin and user_store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail=error_detail("last_admin", "Cannot remove the last active admin account."),
        )

    if not user_store.update_user(user_id, **updates):
        raise_not_found("User not found.")

    ip, user_agent = client_meta(request)
    audit.append(
        AuditAction.USER_UPDATE,
        "User",
        actor_id=current.id,
        entity_id=user_id,
        ip=ip,
        user_agent=user_agent,
        diff={"before": {k: getattr(target, k) for k in updates}, "after": updates},
    )
    return UserResponse.from_domain(user_store.get_by_id(user_id))
