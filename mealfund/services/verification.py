"""
Verification Processor.
A school confirms receipt of a delivery; the delivery becomes verified and
the escrow release is attempted once. The receipt stands even when the
payout does not go through.
"""

import uuid
from datetime import datetime
from typing import Callable, Optional

import structlog

from mealfund.errors import DuplicateVerification, InvalidDeliveryState, NotFound, ValidationError
from mealfund.ledger.base import LedgerStore
from mealfund.models.enums import VerificationStatus
from mealfund.observability.metrics import verifications_total
from mealfund.schemas.records import VerificationRecord
from mealfund.services.escrow import EscrowCoordinator, utcnow
from mealfund.services.lifecycle import VERIFIABLE, DeliveryLifecycleManager
from mealfund.services.outcomes import VerificationOutcome, attempt_release

logger = structlog.get_logger(__name__)


class VerificationProcessor:

    def __init__(
        self,
        store: LedgerStore,
        lifecycle: DeliveryLifecycleManager,
        escrow: EscrowCoordinator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.escrow = escrow
        self.clock = clock

    async def submit(
        self,
        delivery_id: str,
        school_id: str,
        portions_received: int,
        quality_rating: int,
        verified_by: str,
        notes: Optional[str] = None,
        photo_ref: Optional[str] = None,
    ) -> VerificationOutcome:
        """
        Record an approved verification and try to release the escrow.

        Raises ValidationError, NotFound, InvalidDeliveryState or
        DuplicateVerification before anything is written. Release failures
        come back on the outcome instead of being raised.
        """
        if portions_received < 0:
            raise ValidationError("portions_received must be >= 0")
        if not 1 <= quality_rating <= 5:
            raise ValidationError("quality_rating must be between 1 and 5")
        if not verified_by:
            raise ValidationError("verified_by is required")

        async with self.store.lock_delivery(delivery_id):
            delivery = await self.store.get_delivery(delivery_id)
            if delivery is None:
                raise NotFound(f"Delivery {delivery_id} not found")
            if delivery.school_id != school_id:
                raise ValidationError(f"Delivery {delivery_id} does not belong to school {school_id}")
            if delivery.status not in VERIFIABLE:
                raise InvalidDeliveryState(
                    f"Delivery {delivery_id} is {delivery.status.value}; "
                    "only scheduled or delivered deliveries can be verified"
                )
            if await self.store.get_approved_verification(delivery_id) is not None:
                raise DuplicateVerification(f"Delivery {delivery_id} already has an approved verification")

            shortfall = max(0, delivery.portions - portions_received)
            if shortfall:
                logger.warning(
                    "verification_portion_shortfall",
                    delivery_id=delivery_id,
                    promised=delivery.portions,
                    received=portions_received,
                    shortfall=shortfall,
                )

            # No verification row unless the status compare-and-set wins
            await self.lifecycle.mark_verified(delivery_id)
            verification = await self.store.insert_verification(VerificationRecord(
                verification_id=str(uuid.uuid4()),
                delivery_id=delivery_id,
                school_id=school_id,
                verified_by=verified_by,
                status=VerificationStatus.APPROVED,
                portions_received=portions_received,
                portions_shortfall=shortfall,
                quality_rating=quality_rating,
                notes=notes,
                photo_ref=photo_ref,
                verified_at=self.clock(),
            ))

        # Release takes the delivery lock itself
        attempt = await attempt_release(self.escrow, delivery_id, actor=verified_by)
        outcome = VerificationOutcome(verification=verification, **attempt.model_dump())
        verifications_total.labels(payment_state=outcome.payment_state).inc()

        logger.info(
            "verification_submitted",
            delivery_id=delivery_id,
            verification_id=verification.verification_id,
            payment_state=outcome.payment_state,
            settlement_reference=outcome.settlement_reference,
        )
        return outcome
