"""
Tests for the escrow coordinator.
"""

import asyncio
from decimal import Decimal

import pytest

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
from mealfund.models.enums import EscrowStatus, IssueSeverity, IssueType, ReconciliationStatus
from mealfund.services.escrow import generate_escrow_id


class TestEscrowId:

    def test_hex_reference(self, clock):
        escrow_id = generate_escrow_id("d1", "s1", "c1", clock())
        assert escrow_id.startswith("0x")
        assert len(escrow_id) == 66

    def test_depends_on_lock_time(self, clock):
        first = generate_escrow_id("d1", "s1", "c1", clock())
        second = generate_escrow_id("d1", "s1", "c1", clock.advance(seconds=1))
        assert first != second


class TestLock:

    def test_lock_records_rail_receipt(self, services):
        delivery = asyncio.run(services.awaiting_lock())
        escrow = asyncio.run(services.escrow.lock(delivery.delivery_id, delivery.amount))

        assert escrow.status == EscrowStatus.LOCKED
        assert escrow.external_tx_ref.startswith("0x")
        assert services.rail.custody[escrow.escrow_id] == Decimal("1500000")

        audit = asyncio.run(services.escrow.audit_trail(delivery.delivery_id))
        assert len(audit) == 1
        assert audit[0].old_status is None
        assert audit[0].new_status == EscrowStatus.LOCKED

    def test_double_lock_returns_existing(self, services):
        delivery = asyncio.run(services.awaiting_lock())
        first = asyncio.run(services.escrow.lock(delivery.delivery_id, delivery.amount))

        with pytest.raises(AlreadyLocked) as exc:
            asyncio.run(services.escrow.lock(delivery.delivery_id, delivery.amount))

        assert exc.value.escrow.escrow_id == first.escrow_id
        assert services.rail.call_count("lock") == 1

    def test_amount_must_match_delivery(self, services):
        delivery = asyncio.run(services.awaiting_lock())
        with pytest.raises(ValidationError):
            asyncio.run(services.escrow.lock(delivery.delivery_id, Decimal("1")))
        assert services.rail.call_count("lock") == 0

    def test_unknown_delivery(self, services):
        with pytest.raises(NotFound):
            asyncio.run(services.escrow.lock("missing", Decimal("10")))

    def test_requires_scheduled_delivery(self, services):
        delivery = asyncio.run(services.new_delivery())
        with pytest.raises(InvalidTransition):
            asyncio.run(services.escrow.lock(delivery.delivery_id, delivery.amount))
        assert services.rail.call_count("lock") == 0

    def test_opens_disputed_when_issue_already_blocks(self, services):
        delivery = asyncio.run(services.awaiting_lock())
        issue = asyncio.run(services.issues.report(
            delivery.delivery_id, "school-1", IssueType.QUALITY_ISSUE, "menu mismatch", IssueSeverity.HIGH,
        ))

        escrow = asyncio.run(services.escrow.lock(delivery.delivery_id, delivery.amount))

        assert escrow.status == EscrowStatus.DISPUTED
        assert escrow.disputed_at is not None
        trail = asyncio.run(services.escrow.audit_trail(delivery.delivery_id))
        assert [e.new_status for e in trail] == [EscrowStatus.LOCKED, EscrowStatus.DISPUTED]
        assert issue.issue_id in trail[-1].note

    def test_hold_without_escrow_is_noop(self, services):
        delivery = asyncio.run(services.awaiting_lock())
        assert asyncio.run(services.escrow.hold(delivery.delivery_id)) is None

    def test_hold_after_release_is_noop(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.escrow.release(delivery.delivery_id))
        assert asyncio.run(services.escrow.hold(delivery.delivery_id)) is None
        assert services.store.escrows[delivery.delivery_id].status == EscrowStatus.RELEASED

    def test_rail_failure_writes_nothing(self, services):
        delivery = asyncio.run(services.awaiting_lock())
        services.rail.fail_on.add("lock")

        with pytest.raises(SettlementRailError) as exc:
            asyncio.run(services.escrow.lock(delivery.delivery_id, delivery.amount))

        assert not exc.value.ambiguous
        assert services.store.escrows == {}
        assert services.store.audit == []
        assert services.store.reconciliation == {}


class TestRelease:

    def test_release_pays_out_once(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        released = asyncio.run(services.escrow.release(delivery.delivery_id, actor="admin"))

        assert released.status == EscrowStatus.RELEASED
        assert released.released_at is not None
        assert released.external_block_ref is not None
        assert services.rail.custody == {}

    def test_double_release_makes_one_rail_call(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.escrow.release(delivery.delivery_id))

        with pytest.raises(AlreadyReleased) as exc:
            asyncio.run(services.escrow.release(delivery.delivery_id))

        assert exc.value.escrow.status == EscrowStatus.RELEASED
        assert services.rail.call_count("release") == 1

    def test_concurrent_release_single_rail_call(self, services):
        delivery = asyncio.run(services.scheduled_delivery())

        async def race():
            return await asyncio.gather(
                *(services.escrow.release(delivery.delivery_id) for _ in range(3)),
                return_exceptions=True,
            )

        results = asyncio.run(race())
        assert sum(1 for r in results if isinstance(r, AlreadyReleased)) == 2
        assert services.rail.call_count("release") == 1

    def test_release_without_escrow(self, services):
        delivery = asyncio.run(services.new_delivery())
        with pytest.raises(NotLocked):
            asyncio.run(services.escrow.release(delivery.delivery_id))

    def test_release_after_refund(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.escrow.refund(delivery.delivery_id))
        with pytest.raises(NotLocked):
            asyncio.run(services.escrow.release(delivery.delivery_id))

    def test_blocked_by_open_high_issue(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        issue = asyncio.run(services.issues.report(
            delivery.delivery_id, "school-1", IssueType.MISSING_DELIVERY, "nothing arrived",
            IssueSeverity.CRITICAL,
        ))

        with pytest.raises(BlockedByDispute) as exc:
            asyncio.run(services.escrow.release(delivery.delivery_id))

        assert exc.value.issue_ids == [issue.issue_id]
        assert services.rail.call_count("release") == 0
        assert services.store.escrows[delivery.delivery_id].status == EscrowStatus.DISPUTED

    def test_override_releases_and_is_audited(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.issues.report(
            delivery.delivery_id, "school-1", IssueType.QUALITY_ISSUE, "cold food", IssueSeverity.HIGH,
        ))

        released = asyncio.run(services.escrow.release(
            delivery.delivery_id, actor="admin", override_dispute=True
        ))

        assert released.status == EscrowStatus.RELEASED
        last = asyncio.run(services.escrow.audit_trail(delivery.delivery_id))[-1]
        assert last.actor == "admin"
        assert last.old_status == EscrowStatus.DISPUTED
        assert "override" in last.note

    def test_low_severity_issue_does_not_block(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.issues.report(
            delivery.delivery_id, "school-1", IssueType.LATE_DELIVERY, "20 minutes late", IssueSeverity.LOW,
        ))
        released = asyncio.run(services.escrow.release(delivery.delivery_id))
        assert released.status == EscrowStatus.RELEASED


class TestDisputeAndRefund:

    def test_dispute_is_idempotent(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        first = asyncio.run(services.escrow.dispute(delivery.delivery_id, reason="check"))
        second = asyncio.run(services.escrow.dispute(delivery.delivery_id))

        assert first.status == second.status == EscrowStatus.DISPUTED
        statuses = [e.new_status for e in asyncio.run(services.escrow.audit_trail(delivery.delivery_id))]
        assert statuses == [EscrowStatus.LOCKED, EscrowStatus.DISPUTED]

    def test_dispute_released_escrow_rejected(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.escrow.release(delivery.delivery_id))
        with pytest.raises(NotLocked):
            asyncio.run(services.escrow.dispute(delivery.delivery_id))

    def test_refund_from_disputed(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.escrow.dispute(delivery.delivery_id))
        refunded = asyncio.run(services.escrow.refund(delivery.delivery_id, reason="vendor fault"))

        assert refunded.status == EscrowStatus.REFUNDED
        assert refunded.refunded_at is not None
        assert services.rail.custody == {}

    def test_refund_twice_rejected(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.escrow.refund(delivery.delivery_id))
        with pytest.raises(NotLocked):
            asyncio.run(services.escrow.refund(delivery.delivery_id))
        assert services.rail.call_count("refund") == 1


class TestReconciliation:

    def test_ambiguous_release_is_flagged(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        services.rail.fail_on.add("release")
        services.rail.ambiguous = True

        with pytest.raises(SettlementRailError) as exc:
            asyncio.run(services.escrow.release(delivery.delivery_id))

        assert exc.value.ambiguous
        items = list(services.store.reconciliation.values())
        assert len(items) == 1
        assert items[0].operation == "release"
        assert items[0].delivery_id == delivery.delivery_id
        assert items[0].status == ReconciliationStatus.PENDING
        # Ledger is left as it was; the operator reconciles
        assert services.store.escrows[delivery.delivery_id].status == EscrowStatus.LOCKED

    def test_mark_reconciled(self, services):
        from mealfund.reconciliation.queue import get_pending_reconciliation, mark_reconciled

        delivery = asyncio.run(services.scheduled_delivery())
        services.rail.fail_on.add("refund")
        services.rail.ambiguous = True
        with pytest.raises(SettlementRailError):
            asyncio.run(services.escrow.refund(delivery.delivery_id))

        pending = asyncio.run(get_pending_reconciliation(services.store))
        assert len(pending) == 1

        resolved = asyncio.run(mark_reconciled(services.store, pending[0].item_id))
        assert resolved.status == ReconciliationStatus.RESOLVED
        assert asyncio.run(get_pending_reconciliation(services.store)) == []

    def test_ledger_write_failure_after_lock_is_flagged(self, services, monkeypatch):
        delivery = asyncio.run(services.awaiting_lock())

        async def broken_insert(escrow):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(services.store, "insert_escrow", broken_insert)

        with pytest.raises(RuntimeError):
            asyncio.run(services.escrow.lock(delivery.delivery_id, delivery.amount))

        items = list(services.store.reconciliation.values())
        assert len(items) == 1
        assert items[0].operation == "lock"
        assert services.rail.call_count("lock") == 1
