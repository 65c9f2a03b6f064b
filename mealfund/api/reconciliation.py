"""
/api/v1/reconciliation endpoints.
Operator view of settlement calls with an unknown outcome.
"""

from fastapi import APIRouter, Depends, Query

from mealfund.dependencies import get_ledger_store, verify_api_key
from mealfund.errors import NotFound
from mealfund.ledger.base import LedgerStore
from mealfund.reconciliation.queue import get_pending_reconciliation, mark_reconciled
from mealfund.schemas.api import ReconciliationListResponse
from mealfund.schemas.records import ReconciliationItem

router = APIRouter(prefix="/api/v1/reconciliation", tags=["reconciliation"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=ReconciliationListResponse)
async def list_pending(
    limit: int = Query(50, ge=1, le=500),
    store: LedgerStore = Depends(get_ledger_store),
):
    items = await get_pending_reconciliation(store, limit=limit)
    return ReconciliationListResponse(items=items, limit=limit)


@router.post("/{item_id}/resolve", response_model=ReconciliationItem)
async def resolve_item(item_id: str, store: LedgerStore = Depends(get_ledger_store)):
    item = await mark_reconciled(store, item_id)
    if item is None:
        raise NotFound(f"No pending reconciliation item {item_id}")
    return item
