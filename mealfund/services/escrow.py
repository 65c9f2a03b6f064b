"""
Escrow Coordinator: custody state machine per delivery.

    locked ──release──▶ released
      │  └──refund───▶ refunded
      └─dispute─▶ disputed ──release──▶ released
                     └────refund────▶ refunded

Stateless over EscrowTransaction rows. Every mutation runs under the
ledger's per-delivery lock, checks status before calling the rail, and
finishes with a status compare-and-set plus an audit entry.
"""

import hashlib
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import structlog

from mealfund.config import settings
from mealfund.errors import (
    AlreadyLocked,
    AlreadyReleased,
    BlockedByDispute,
    InvalidTransition,
    NotFound,
    NotLocked,
    SettlementRailError,
    ValidationError,
)
from mealfund.ledger.base import LedgerStore
from mealfund.models.enums import DeliveryStatus, EscrowStatus
from mealfund.observability.metrics import escrow_release_blocked_total, escrow_transitions_total
from mealfund.reconciliation.queue import route_to_reconciliation
from mealfund.schemas.records import EscrowAuditEntry, EscrowRecord
from mealfund.settlement.base import RailReceipt, SettlementRail

logger = structlog.get_logger(__name__)

HELD_STATUSES = frozenset({EscrowStatus.LOCKED, EscrowStatus.DISPUTED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_escrow_id(delivery_id: str, school_id: str, catering_id: str, at: datetime) -> str:
    """Rail reference: 0x-prefixed SHA-256 of the delivery parties and lock time."""
    stamp = int(at.timestamp() * 1000)
    digest = hashlib.sha256(f"{delivery_id}:{school_id}:{catering_id}:{stamp}".encode("utf-8"))
    return "0x" + digest.hexdigest()


def payee_reference(catering_id: str) -> str:
    return f"catering:{catering_id}"


class EscrowCoordinator:
    """Lock, release, dispute and refund custody for deliveries."""

    def __init__(
        self,
        store: LedgerStore,
        rail: SettlementRail,
        payer_ref: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.rail = rail
        self.payer_ref = payer_ref or settings.PAYER_REFERENCE
        self.clock = clock

    # ── Reads ────────────────────────────────────────────────
    async def get(self, delivery_id: str) -> Optional[EscrowRecord]:
        return await self.store.get_escrow(delivery_id)

    async def audit_trail(self, delivery_id: str) -> list[EscrowAuditEntry]:
        return await self.store.list_audit(delivery_id)

    # ── Mutations ────────────────────────────────────────────
    async def lock(self, delivery_id: str, amount: Decimal, actor: str = "system") -> EscrowRecord:
        """
        Lock the delivery amount into custody.

        The delivery must be scheduled when the delivery lock is taken, so a
        cancel that lands first turns this into InvalidTransition without a
        rail call. All-or-nothing: if the rail call fails no escrow row is
        written. Issues already blocking the delivery open the escrow as
        disputed.
        """
        amount = Decimal(str(amount))

        async with self.store.lock_delivery(delivery_id):
            delivery = await self.store.get_delivery(delivery_id)
            if delivery is None:
                raise NotFound(f"Delivery {delivery_id} not found")

            existing = await self.store.get_escrow(delivery_id)
            if existing is not None:
                logger.info("escrow_already_locked", delivery_id=delivery_id, escrow_id=existing.escrow_id)
                raise AlreadyLocked(existing)

            if delivery.status != DeliveryStatus.SCHEDULED:
                raise InvalidTransition(
                    "delivery", delivery_id, delivery.status.value, f"escrow:{EscrowStatus.LOCKED.value}"
                )

            if amount != delivery.amount:
                raise ValidationError(
                    f"Lock amount {amount} does not match delivery amount {delivery.amount}"
                )

            now = self.clock()
            escrow_id = generate_escrow_id(
                delivery_id, delivery.school_id, delivery.catering_id, now
            )

            receipt = await self._rail_call(
                "lock", delivery_id, escrow_id,
                self.rail.lock(escrow_id, self.payer_ref, payee_reference(delivery.catering_id), amount),
            )

            escrow = EscrowRecord(
                escrow_id=escrow_id,
                delivery_id=delivery_id,
                school_id=delivery.school_id,
                catering_id=delivery.catering_id,
                amount=amount,
                status=EscrowStatus.LOCKED,
                locked_at=now,
                external_tx_ref=receipt.external_tx_ref,
                external_block_ref=receipt.external_block_ref,
                updated_at=now,
            )
            try:
                escrow = await self.store.insert_escrow(escrow)
            except Exception as e:
                # Funds moved on the rail but the ledger has no row
                await route_to_reconciliation(
                    self.store, delivery_id, "lock", "rail_succeeded_ledger_write_failed",
                    escrow_id=escrow_id, details=str(e)[:500],
                )
                raise

            await self._audit(escrow, None, EscrowStatus.LOCKED, actor, receipt.external_tx_ref)

            blocking = await self.store.list_blocking_issues(delivery_id)
            if blocking:
                escrow = await self._transition(
                    escrow, {EscrowStatus.LOCKED}, EscrowStatus.DISPUTED, actor, None,
                    "held by open issues: " + ",".join(i.issue_id for i in blocking),
                    disputed_at=now,
                )

        logger.info(
            "escrow_locked",
            delivery_id=delivery_id,
            escrow_id=escrow_id,
            amount=str(amount),
            tx_ref=receipt.external_tx_ref,
            status=escrow.status.value,
        )
        return escrow

    async def release(
        self,
        delivery_id: str,
        actor: str = "system",
        override_dispute: bool = False,
    ) -> EscrowRecord:
        """
        Pay the catering out of custody. At most once per delivery: the
        status check runs under the delivery lock before the rail is called.
        """
        async with self.store.lock_delivery(delivery_id):
            escrow = await self.store.get_escrow(delivery_id)
            if escrow is None:
                raise NotLocked(f"No escrow for delivery {delivery_id}")
            if escrow.status == EscrowStatus.RELEASED:
                logger.info("escrow_already_released", delivery_id=delivery_id, escrow_id=escrow.escrow_id)
                raise AlreadyReleased(escrow)
            if escrow.status not in HELD_STATUSES:
                raise NotLocked(f"Escrow {escrow.escrow_id} is {escrow.status.value}")

            blocking = await self.store.list_blocking_issues(delivery_id)
            if blocking and not override_dispute:
                escrow_release_blocked_total.inc()
                logger.info(
                    "escrow_release_blocked",
                    delivery_id=delivery_id,
                    escrow_id=escrow.escrow_id,
                    issue_ids=[i.issue_id for i in blocking],
                )
                raise BlockedByDispute(delivery_id, [i.issue_id for i in blocking])

            receipt = await self._rail_call(
                "release", delivery_id, escrow.escrow_id, self.rail.release(escrow.escrow_id)
            )

            now = self.clock()
            note = None
            if blocking:
                note = "released under dispute override: " + ",".join(i.issue_id for i in blocking)
            updated = await self._transition(
                escrow, HELD_STATUSES, EscrowStatus.RELEASED, actor, receipt, note,
                released_at=now,
                external_tx_ref=receipt.external_tx_ref,
                external_block_ref=receipt.external_block_ref,
            )

        logger.info(
            "escrow_released",
            delivery_id=delivery_id,
            escrow_id=updated.escrow_id,
            tx_ref=receipt.external_tx_ref,
            block_ref=receipt.external_block_ref,
            override=bool(blocking),
        )
        return updated

    async def dispute(self, delivery_id: str, actor: str = "system", reason: Optional[str] = None) -> EscrowRecord:
        """Hold a locked escrow. Disputing an already-disputed escrow is a no-op."""
        async with self.store.lock_delivery(delivery_id):
            escrow = await self.store.get_escrow(delivery_id)
            if escrow is None:
                raise NotLocked(f"No escrow for delivery {delivery_id}")
            if escrow.status not in HELD_STATUSES:
                raise NotLocked(f"Escrow {escrow.escrow_id} is {escrow.status.value}")
            return await self._dispute_held(escrow, actor, reason)

    async def hold(self, delivery_id: str, actor: str = "system", reason: Optional[str] = None) -> Optional[EscrowRecord]:
        """
        Dispute the escrow if custody is still held. Returns None when there
        is no escrow yet or it already left custody.
        """
        async with self.store.lock_delivery(delivery_id):
            escrow = await self.store.get_escrow(delivery_id)
            if escrow is None or escrow.status not in HELD_STATUSES:
                return None
            return await self._dispute_held(escrow, actor, reason)

    async def refund(self, delivery_id: str, actor: str = "system", reason: Optional[str] = None) -> EscrowRecord:
        """Return held custody to the payer."""
        async with self.store.lock_delivery(delivery_id):
            return await self.refund_under_lock(delivery_id, actor=actor, reason=reason)

    async def refund_under_lock(
        self,
        delivery_id: str,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> EscrowRecord:
        """refund() for callers already inside store.lock_delivery(delivery_id)."""
        escrow = await self.store.get_escrow(delivery_id)
        if escrow is None:
            raise NotLocked(f"No escrow for delivery {delivery_id}")
        if escrow.status not in HELD_STATUSES:
            raise NotLocked(f"Escrow {escrow.escrow_id} is {escrow.status.value}")

        receipt = await self._rail_call(
            "refund", delivery_id, escrow.escrow_id, self.rail.refund(escrow.escrow_id)
        )

        updated = await self._transition(
            escrow, HELD_STATUSES, EscrowStatus.REFUNDED, actor, receipt, reason,
            refunded_at=self.clock(),
            external_tx_ref=receipt.external_tx_ref,
            external_block_ref=receipt.external_block_ref,
        )

        logger.info("escrow_refunded", delivery_id=delivery_id, escrow_id=updated.escrow_id, reason=reason)
        return updated

    # ── Internals ────────────────────────────────────────────
    async def _dispute_held(self, escrow: EscrowRecord, actor: str, reason: Optional[str]) -> EscrowRecord:
        if escrow.status == EscrowStatus.DISPUTED:
            return escrow
        updated = await self._transition(
            escrow, {EscrowStatus.LOCKED}, EscrowStatus.DISPUTED, actor, None, reason,
            disputed_at=self.clock(),
        )
        logger.info("escrow_disputed", delivery_id=escrow.delivery_id, escrow_id=escrow.escrow_id, reason=reason)
        return updated

    async def _rail_call(self, operation: str, delivery_id: str, escrow_id: str, call) -> RailReceipt:
        try:
            return await call
        except SettlementRailError as e:
            if e.ambiguous:
                await route_to_reconciliation(
                    self.store, delivery_id, operation, "ambiguous_rail_outcome",
                    escrow_id=escrow_id, details=e.message,
                )
            raise

    async def _transition(
        self,
        escrow: EscrowRecord,
        expected,
        new: EscrowStatus,
        actor: str,
        receipt: Optional[RailReceipt],
        note: Optional[str],
        **fields,
    ) -> EscrowRecord:
        updated = await self.store.cas_escrow_status(
            escrow.delivery_id, expected, new, updated_at=self.clock(), **fields
        )
        if updated is None:
            if receipt is not None:
                await route_to_reconciliation(
                    self.store, escrow.delivery_id, new.value, "rail_succeeded_status_write_lost",
                    escrow_id=escrow.escrow_id, details=receipt.external_tx_ref,
                )
            raise InvalidTransition("escrow", escrow.escrow_id, escrow.status.value, new.value)

        await self._audit(
            updated, escrow.status, new, actor,
            receipt.external_tx_ref if receipt else None, note,
        )
        return updated

    async def _audit(
        self,
        escrow: EscrowRecord,
        old: Optional[EscrowStatus],
        new: EscrowStatus,
        actor: str,
        tx_ref: Optional[str],
        note: Optional[str] = None,
    ) -> None:
        await self.store.append_audit(EscrowAuditEntry(
            audit_id=str(uuid.uuid4()),
            escrow_id=escrow.escrow_id,
            delivery_id=escrow.delivery_id,
            old_status=old,
            new_status=new,
            actor=actor,
            external_tx_ref=tx_ref,
            note=note,
            created_at=self.clock(),
        ))
        escrow_transitions_total.labels(
            from_status=old.value if old else "none",
            to_status=new.value,
        ).inc()
