"""
Delivery Lifecycle Manager: the only writer of delivery status.

    pending ──▶ scheduled ──▶ delivered ──▶ verified
       │            │  └──────────────────────▲
       └────────────┴──────────┴──▶ cancelled

Every transition is a compare-and-set on the stored status. A caller that
loses the race gets InvalidTransition and the row is left as the winner
wrote it.
"""

import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional

import structlog

from mealfund.config import settings
from mealfund.errors import InvalidTransition, NotFound, ValidationError
from mealfund.ledger.base import LedgerStore
from mealfund.models.enums import DeliveryStatus
from mealfund.observability.metrics import (
    delivery_transition_conflicts_total,
    delivery_transitions_total,
)
from mealfund.schemas.records import DeliveryRecord
from mealfund.services.escrow import HELD_STATUSES, EscrowCoordinator, utcnow

logger = structlog.get_logger(__name__)

CANCELLABLE = frozenset({DeliveryStatus.PENDING, DeliveryStatus.SCHEDULED, DeliveryStatus.DELIVERED})
VERIFIABLE = frozenset({DeliveryStatus.SCHEDULED, DeliveryStatus.DELIVERED})


def _to_amount(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")


class DeliveryLifecycleManager:

    def __init__(
        self,
        store: LedgerStore,
        escrow: EscrowCoordinator,
        clock: Callable[[], datetime] = utcnow,
        grace_days: Optional[int] = None,
    ):
        self.store = store
        self.escrow = escrow
        self.clock = clock
        self.grace_days = settings.DELIVERY_DATE_GRACE_DAYS if grace_days is None else grace_days

    async def get(self, delivery_id: str) -> DeliveryRecord:
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            raise NotFound(f"Delivery {delivery_id} not found")
        return delivery

    async def create(
        self,
        school_id: str,
        catering_id: str,
        delivery_date: date,
        portions: int,
        amount,
        notes: Optional[str] = None,
    ) -> DeliveryRecord:
        """Create a pending delivery. No funds move until schedule()."""
        amount = _to_amount(amount)
        if not school_id or not catering_id:
            raise ValidationError("school_id and catering_id are required")
        if portions <= 0:
            raise ValidationError("portions must be greater than 0")
        if amount <= 0:
            raise ValidationError("amount must be greater than 0")

        now = self.clock()
        earliest = now.date() - timedelta(days=self.grace_days)
        if delivery_date < earliest:
            raise ValidationError(
                f"delivery_date {delivery_date.isoformat()} is before {earliest.isoformat()}"
            )

        delivery = await self.store.insert_delivery(DeliveryRecord(
            delivery_id=str(uuid.uuid4()),
            school_id=school_id,
            catering_id=catering_id,
            delivery_date=delivery_date,
            portions=portions,
            amount=amount,
            status=DeliveryStatus.PENDING,
            notes=notes,
            created_at=now,
            updated_at=now,
        ))

        logger.info(
            "delivery_created",
            delivery_id=delivery.delivery_id,
            school_id=school_id,
            catering_id=catering_id,
            portions=portions,
            amount=str(amount),
        )
        return delivery

    async def amend(
        self,
        delivery_id: str,
        portions: Optional[int] = None,
        amount=None,
        notes: Optional[str] = None,
    ) -> DeliveryRecord:
        """Change terms while the delivery is still pending (no escrow yet)."""
        fields = {}
        if portions is not None:
            if portions <= 0:
                raise ValidationError("portions must be greater than 0")
            fields["portions"] = portions
        if amount is not None:
            amount = _to_amount(amount)
            if amount <= 0:
                raise ValidationError("amount must be greater than 0")
            fields["amount"] = amount
        if notes is not None:
            fields["notes"] = notes

        delivery = await self._transition(
            delivery_id, {DeliveryStatus.PENDING}, DeliveryStatus.PENDING, **fields
        )
        logger.info("delivery_amended", delivery_id=delivery_id, fields=sorted(fields))
        return delivery

    async def schedule(self, delivery_id: str, actor: str = "system") -> DeliveryRecord:
        """
        pending → scheduled, then lock the delivery amount in escrow.
        If the lock fails the delivery goes back to pending and the error
        is re-raised.
        """
        delivery = await self._transition(
            delivery_id, {DeliveryStatus.PENDING}, DeliveryStatus.SCHEDULED
        )

        try:
            escrow = await self.escrow.lock(delivery_id, delivery.amount, actor=actor)
        except Exception as e:
            restored = await self.store.cas_delivery_status(
                delivery_id,
                DeliveryStatus.SCHEDULED,
                DeliveryStatus.PENDING,
                updated_at=self.clock(),
            )
            logger.warning(
                "delivery_schedule_rolled_back",
                delivery_id=delivery_id,
                error=str(e),
                restored=restored is not None,
            )
            raise

        logger.info("delivery_scheduled", delivery_id=delivery_id, escrow_id=escrow.escrow_id)
        return delivery

    async def mark_delivered(self, delivery_id: str) -> DeliveryRecord:
        return await self._transition(
            delivery_id, {DeliveryStatus.SCHEDULED}, DeliveryStatus.DELIVERED
        )

    async def mark_verified(self, delivery_id: str) -> DeliveryRecord:
        return await self._transition(delivery_id, VERIFIABLE, DeliveryStatus.VERIFIED)

    async def cancel(self, delivery_id: str, reason: str, actor: str = "system") -> DeliveryRecord:
        """
        Cancel a non-terminal delivery. Held escrow is refunded, never
        released. A failed refund puts the delivery back where it was.

        Runs under the delivery lock, so an escrow lock in flight either
        finishes first and is refunded here, or finds the delivery cancelled.
        """
        if not reason:
            raise ValidationError("cancellation reason is required")

        async with self.store.lock_delivery(delivery_id):
            before = await self.get(delivery_id)
            cancelled = await self._transition(
                delivery_id, CANCELLABLE, DeliveryStatus.CANCELLED, cancel_reason=reason
            )

            escrow = await self.store.get_escrow(delivery_id)
            if escrow is not None and escrow.status in HELD_STATUSES:
                try:
                    await self.escrow.refund_under_lock(delivery_id, actor=actor, reason=f"cancelled: {reason}")
                except Exception as e:
                    restored = await self.store.cas_delivery_status(
                        delivery_id,
                        DeliveryStatus.CANCELLED,
                        before.status,
                        cancel_reason=None,
                        updated_at=self.clock(),
                    )
                    logger.error(
                        "delivery_cancel_rolled_back",
                        delivery_id=delivery_id,
                        restored_status=before.status.value,
                        restored=restored is not None,
                        error=str(e),
                    )
                    raise

        logger.info("delivery_cancelled", delivery_id=delivery_id, reason=reason)
        return cancelled

    async def _transition(
        self,
        delivery_id: str,
        allowed: Iterable[DeliveryStatus],
        target: DeliveryStatus,
        **fields,
    ) -> DeliveryRecord:
        current = await self.get(delivery_id)
        if current.status not in allowed:
            delivery_transition_conflicts_total.labels(target_status=target.value).inc()
            raise InvalidTransition("delivery", delivery_id, current.status.value, target.value)

        updated = await self.store.cas_delivery_status(
            delivery_id, current.status, target, updated_at=self.clock(), **fields
        )
        if updated is None:
            # Lost the compare-and-set to a concurrent writer
            delivery_transition_conflicts_total.labels(target_status=target.value).inc()
            latest = await self.store.get_delivery(delivery_id)
            raise InvalidTransition(
                "delivery",
                delivery_id,
                latest.status.value if latest else None,
                target.value,
            )

        if current.status != target:
            delivery_transitions_total.labels(
                from_status=current.status.value, to_status=target.value
            ).inc()
            logger.info(
                "delivery_transition",
                delivery_id=delivery_id,
                from_status=current.status.value,
                to_status=target.value,
            )
        return updated
