"""
Reconciliation queue management.
Settlement calls whose outcome is unknown are flagged here for an operator
to check against the rail. Nothing in the core retries them.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog

from mealfund.ledger.base import LedgerStore
from mealfund.models.enums import ReconciliationStatus
from mealfund.observability.metrics import reconciliation_items_total
from mealfund.schemas.records import ReconciliationItem

logger = structlog.get_logger(__name__)


async def route_to_reconciliation(
    store: LedgerStore,
    delivery_id: str,
    operation: str,
    reason: str,
    escrow_id: Optional[str] = None,
    details: Optional[str] = None,
) -> str:
    """
    Flag a delivery's settlement call for out-of-band reconciliation.
    Returns the item_id.
    """
    item = ReconciliationItem(
        item_id=str(uuid.uuid4()),
        delivery_id=delivery_id,
        escrow_id=escrow_id,
        operation=operation,
        reason=reason,
        details=details,
        status=ReconciliationStatus.PENDING,
        created_at=datetime.now(timezone.utc),
    )
    await store.insert_reconciliation_item(item)
    reconciliation_items_total.labels(operation=operation).inc()

    logger.warning(
        "routed_to_reconciliation",
        item_id=item.item_id,
        delivery_id=delivery_id,
        escrow_id=escrow_id,
        operation=operation,
        reason=reason,
    )

    return item.item_id


async def get_pending_reconciliation(
    store: LedgerStore,
    limit: int = 50,
) -> list[ReconciliationItem]:
    """Pending items, oldest first."""
    return await store.list_reconciliation_items(ReconciliationStatus.PENDING, limit=limit)


async def mark_reconciled(store: LedgerStore, item_id: str) -> Optional[ReconciliationItem]:
    item = await store.resolve_reconciliation_item(item_id, datetime.now(timezone.utc))
    if item is not None:
        logger.info("reconciliation_resolved", item_id=item_id, delivery_id=item.delivery_id)
    return item
