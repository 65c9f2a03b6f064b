"""
/api/v1/verifications endpoint.
School-side receipt confirmation. A 201 means the receipt is recorded;
payment_state tells whether the escrow was paid out.
"""

from fastapi import APIRouter, Depends, status

from mealfund.dependencies import get_verification_processor, verify_api_key
from mealfund.observability.logging import bind_request_context
from mealfund.schemas.api import VerificationSubmitRequest, VerificationSubmitResponse
from mealfund.services.verification import VerificationProcessor

router = APIRouter(prefix="/api/v1/verifications", tags=["verifications"], dependencies=[Depends(verify_api_key)])


@router.post("", response_model=VerificationSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_verification(
    body: VerificationSubmitRequest,
    processor: VerificationProcessor = Depends(get_verification_processor),
):
    bind_request_context(delivery_id=body.delivery_id, school_id=body.school_id)
    outcome = await processor.submit(
        delivery_id=body.delivery_id,
        school_id=body.school_id,
        portions_received=body.portions_received,
        quality_rating=body.quality_rating,
        verified_by=body.verified_by or f"school:{body.school_id}",
        notes=body.notes,
        photo_ref=body.photo_ref,
    )
    return VerificationSubmitResponse(
        verification=outcome.verification,
        payment_state=outcome.payment_state,
        settlement_reference=outcome.settlement_reference,
        release_error=outcome.release_error,
        release_error_code=outcome.release_error_code,
    )
