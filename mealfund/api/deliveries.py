"""
/api/v1/deliveries endpoints.
Create, amend, schedule (locks escrow), mark delivered, cancel (refunds).
"""

from fastapi import APIRouter, Depends, status

from mealfund.dependencies import get_lifecycle_manager, verify_api_key
from mealfund.observability.logging import bind_request_context
from mealfund.schemas.api import (
    CancelResponse,
    DeliveryAmendRequest,
    DeliveryCancelRequest,
    DeliveryCreateRequest,
    ScheduleResponse,
)
from mealfund.schemas.records import DeliveryRecord
from mealfund.services.lifecycle import DeliveryLifecycleManager

router = APIRouter(prefix="/api/v1/deliveries", tags=["deliveries"], dependencies=[Depends(verify_api_key)])


@router.post("", response_model=DeliveryRecord, status_code=status.HTTP_201_CREATED)
async def create_delivery(
    body: DeliveryCreateRequest,
    lifecycle: DeliveryLifecycleManager = Depends(get_lifecycle_manager),
):
    bind_request_context(school_id=body.school_id)
    return await lifecycle.create(
        school_id=body.school_id,
        catering_id=body.catering_id,
        delivery_date=body.delivery_date,
        portions=body.portions,
        amount=body.amount,
        notes=body.notes,
    )


@router.get("/{delivery_id}", response_model=DeliveryRecord)
async def get_delivery(
    delivery_id: str,
    lifecycle: DeliveryLifecycleManager = Depends(get_lifecycle_manager),
):
    return await lifecycle.get(delivery_id)


@router.patch("/{delivery_id}", response_model=DeliveryRecord)
async def amend_delivery(
    delivery_id: str,
    body: DeliveryAmendRequest,
    lifecycle: DeliveryLifecycleManager = Depends(get_lifecycle_manager),
):
    bind_request_context(delivery_id=delivery_id)
    return await lifecycle.amend(
        delivery_id, portions=body.portions, amount=body.amount, notes=body.notes
    )


@router.post("/{delivery_id}/schedule", response_model=ScheduleResponse)
async def schedule_delivery(
    delivery_id: str,
    lifecycle: DeliveryLifecycleManager = Depends(get_lifecycle_manager),
):
    """Schedule the delivery and lock its amount in escrow."""
    bind_request_context(delivery_id=delivery_id)
    delivery = await lifecycle.schedule(delivery_id, actor="api")
    escrow = await lifecycle.escrow.get(delivery_id)
    return ScheduleResponse(delivery=delivery, escrow=escrow)


@router.post("/{delivery_id}/delivered", response_model=DeliveryRecord)
async def mark_delivered(
    delivery_id: str,
    lifecycle: DeliveryLifecycleManager = Depends(get_lifecycle_manager),
):
    bind_request_context(delivery_id=delivery_id)
    return await lifecycle.mark_delivered(delivery_id)


@router.post("/{delivery_id}/cancel", response_model=CancelResponse)
async def cancel_delivery(
    delivery_id: str,
    body: DeliveryCancelRequest,
    lifecycle: DeliveryLifecycleManager = Depends(get_lifecycle_manager),
):
    """Cancel; held escrow is refunded."""
    bind_request_context(delivery_id=delivery_id)
    delivery = await lifecycle.cancel(delivery_id, body.reason, actor=body.actor)
    return CancelResponse(delivery=delivery, escrow=await lifecycle.escrow.get(delivery_id))
