"""
api/routes/v1/items.py -- Item catalogue endpoints.

Routes:
  GET   /api/v1/items            -- search (?query=&category=&is_active=) (any role)
  GET   /api/v1/items/available  -- active items with no active loan (clerk or admin)
  GET   /api/v1/items/{id}       -- detail (any role)
  POST  /api/v1/items            -- add an item (admin)
  PATCH /api/v1/items/{id}       -- edit or deactivate an item (admin)

/items/available is registered before /items/{id} so the literal path wins.
"""


from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.exc import IntegrityError

from api.errors import client_meta, patch_fields, raise_conflict, raise_no_changes, raise_not_found
from api.limiter import limiter, mutation_limit
from api.models import MAX_ID, ItemCreate, ItemPatch, ItemResponse
from auth.dependencies import require_admin, require_any_role, require_clerk_or_admin
from auth.models import Identity
from ledger.models import Item
from ledger.service import LoanLedger

router = APIRouter()


@router.get("/items", response_model=list[ItemResponse])
def search_items(
    request: Request,
    query: Optional[str] = Query(default=None, max_length=100),
    category: Optional[str] = Query(default=None, max_length=100),
    is_active: Optional[bool] = None,
    current: Identity = Depends(require_any_role),
) -> list[ItemResponse]:
    ledger: LoanLedger = request.app.state.ledger
    return [ItemResponse.from_domain(i) for i in ledger.search_items(query, category, is_active)]


@router.get("/items/available", response_model=list[ItemResponse])
def list_available_items(request: Request, current: Identity = Depends(require_clerk_or_admin)) -> list[ItemResponse]:
    """Items a clerk can hand out right now."""
    ledger: LoanLedger = request.app.state.ledger
    return [ItemResponse.from_domain(i) for i in ledger.list_available_items()]


@router.get("/items/{item_id}", response_model=ItemResponse)
def get_item(
    request: Request,
    item_id: int = Path(gt=0, le=MAX_ID),
    current: Identity = Depends(require_any_role),
) -> ItemResponse:
    ledger: LoanLedger = request.app.state.ledger
    item = ledger.get_item(item_id)
    if item is None:
        raise_not_found("Item not found.")
    return ItemResponse.from_domain(item)


@router.post("/items", response_model=ItemResponse, status_code=201)
@limiter.limit(mutation_limit)
def create_item(request: Request, body: ItemCreate, current: Identity = Depends(require_admin)) -> ItemResponse:
    ledger: LoanLedger = request.app.state.ledger
    ip, user_agent = client_meta(request)
    try:
        item = ledger.create_item(
            Item(
                name=body.name,
                category=body.category,
                specification=body.specification,
                asset_tag=body.asset_tag,
                is_active=body.is_active,
            ),
            actor_id=current.id,
            ip=ip,
            user_agent=user_agent,
        )
    except IntegrityError:
        raise_conflict("An item with that asset tag already exists.")
    return ItemResponse.from_domain(item)


@router.patch("/items/{item_id}", response_model=ItemResponse)
@limiter.limit(mutation_limit)
def update_item(
    request: Request,
    body: ItemPatch,
    item_id: int = Path(gt=0, le=MAX_ID),
    current: Identity = Depends(require_admin),
) -> ItemResponse:
    ledger: LoanLedger = request.app.state.ledger
    fields = patch_fields(body, nullable=frozenset({"specification", "asset_tag"}))
    if not fields:
        raise_no_changes()
    ip, user_agent = client_meta(request)
    try:
        item = ledger.update_item(item_id, actor_id=current.id, ip=ip, user_agent=user_agent, **fields)
    except IntegrityError:
        raise_conflict("An item with that asset tag already exists.")
    if item is None:
        raise_not_found("Item not found.")
    return ItemResponse.from_domain(item)
