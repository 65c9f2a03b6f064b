"""
Results of operations that end with a release attempt.
A verification or an issue resolution can succeed while the payout does not.
"""

from typing import Optional

import structlog
from pydantic import BaseModel

from mealfund.errors import AlreadyReleased, BlockedByDispute, NotLocked, SettlementRailError
from mealfund.schemas.records import EscrowRecord, IssueRecord, VerificationRecord

logger = structlog.get_logger(__name__)

PAYMENT_RELEASED = "payment_released"
PAYMENT_PENDING = "payment_pending"


class ReleaseAttempt(BaseModel):
    released: bool = False
    escrow: Optional[EscrowRecord] = None
    settlement_reference: Optional[str] = None
    release_error: Optional[str] = None
    release_error_code: Optional[str] = None

    @property
    def payment_state(self) -> str:
        return PAYMENT_RELEASED if self.released else PAYMENT_PENDING


class VerificationOutcome(ReleaseAttempt):
    verification: VerificationRecord


class ResolutionOutcome(ReleaseAttempt):
    issue: IssueRecord
    release_attempted: bool = False


async def attempt_release(escrow_coordinator, delivery_id: str, actor: str) -> ReleaseAttempt:
    """
    Ask the coordinator to release and fold the expected failures into the
    result. Anything else propagates.
    """
    try:
        escrow = await escrow_coordinator.release(delivery_id, actor=actor)
    except AlreadyReleased as e:
        return ReleaseAttempt(
            released=True,
            escrow=e.escrow,
            settlement_reference=e.escrow.external_tx_ref,
        )
    except (BlockedByDispute, NotLocked, SettlementRailError) as e:
        logger.warning(
            "release_deferred",
            delivery_id=delivery_id,
            error_code=e.error_code,
            error=e.message,
        )
        return ReleaseAttempt(release_error=e.message, release_error_code=e.error_code)

    return ReleaseAttempt(
        released=True,
        escrow=escrow,
        settlement_reference=escrow.external_tx_ref,
    )
