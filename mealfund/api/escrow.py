"""
/api/v1/escrow endpoints (admin).
Escrow detail with audit trail, manual release (with optional dispute
override), dispute and refund. Locking happens through delivery scheduling.
"""

from fastapi import APIRouter, Depends

from mealfund.dependencies import get_escrow_coordinator, verify_api_key
from mealfund.errors import NotFound
from mealfund.observability.logging import bind_request_context
from mealfund.schemas.api import EscrowActionRequest, EscrowDetail, EscrowReleaseRequest
from mealfund.schemas.records import EscrowRecord
from mealfund.services.escrow import EscrowCoordinator

router = APIRouter(prefix="/api/v1/escrow", tags=["escrow"], dependencies=[Depends(verify_api_key)])


@router.get("/{delivery_id}", response_model=EscrowDetail)
async def get_escrow(delivery_id: str, escrow: EscrowCoordinator = Depends(get_escrow_coordinator)):
    record = await escrow.get(delivery_id)
    if record is None:
        raise NotFound(f"No escrow for delivery {delivery_id}")
    return EscrowDetail(escrow=record, audit=await escrow.audit_trail(delivery_id))


@router.post("/{delivery_id}/release", response_model=EscrowRecord)
async def release_escrow(
    delivery_id: str,
    body: EscrowReleaseRequest,
    escrow: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    bind_request_context(delivery_id=delivery_id)
    return await escrow.release(delivery_id, actor=body.actor, override_dispute=body.override_dispute)


@router.post("/{delivery_id}/dispute", response_model=EscrowRecord)
async def dispute_escrow(
    delivery_id: str,
    body: EscrowActionRequest,
    escrow: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    bind_request_context(delivery_id=delivery_id)
    return await escrow.dispute(delivery_id, actor=body.actor, reason=body.reason)


@router.post("/{delivery_id}/refund", response_model=EscrowRecord)
async def refund_escrow(
    delivery_id: str,
    body: EscrowActionRequest,
    escrow: EscrowCoordinator = Depends(get_escrow_coordinator),
):
    bind_request_context(delivery_id=delivery_id)
    return await escrow.refund(delivery_id, actor=body.actor, reason=body.reason)
