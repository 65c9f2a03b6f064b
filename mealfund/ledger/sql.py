"""
PostgreSQL ledger store on SQLAlchemy async.

Each call runs in its own short session and commits before returning.
Compare-and-set is a single UPDATE ... WHERE status = :expected RETURNING,
and lock_delivery() holds a session-level advisory lock keyed on the
delivery id.
"""

import hashlib
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import structlog
from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mealfund.ledger.base import LedgerStore
from mealfund.models.enums import (
    BLOCKING_SEVERITIES,
    UNRESOLVED_STATUSES,
    DeliveryStatus,
    EscrowStatus,
    IssueSeverity,
    IssueStatus,
    ReconciliationStatus,
    VerificationStatus,
)
from mealfund.models.tables import (
    Delivery,
    EscrowAuditLog,
    EscrowTransaction,
    Issue,
    ReconciliationQueueItem,
    School,
    Verification,
)
from mealfund.schemas.records import (
    DeliveryRecord,
    EscrowAuditEntry,
    EscrowRecord,
    IssueRecord,
    ReconciliationItem,
    SchoolPriority,
    VerificationRecord,
)

logger = structlog.get_logger(__name__)


def _advisory_key(delivery_id: str) -> int:
    """Stable signed 64-bit key for pg_advisory_lock."""
    digest = hashlib.sha256(f"delivery:{delivery_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _values(fields: dict) -> dict:
    """Enum members to their DB string values."""
    return {k: (v.value if hasattr(v, "value") else v) for k, v in fields.items()}


class SqlLedgerStore(LedgerStore):
    """Ledger backed by the tables in mealfund.models.tables."""

    def __init__(self, engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession]):
        self.engine = engine
        self.session_factory = session_factory

    @asynccontextmanager
    async def lock_delivery(self, delivery_id: str) -> AsyncIterator[None]:
        key = _advisory_key(delivery_id)
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT pg_advisory_lock(:k)"), {"k": key})
            try:
                yield
            finally:
                await conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": key})
                await conn.commit()

    async def _insert(self, row) -> None:
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()

    # ── Deliveries ───────────────────────────────────────────
    async def insert_delivery(self, delivery: DeliveryRecord) -> DeliveryRecord:
        row = Delivery(**_values(delivery.model_dump()))
        async with self.session_factory() as session:
            # Schools are registered lazily so priority scoring can find them
            existing = await session.get(School, delivery.school_id)
            if existing is None:
                session.add(School(school_id=delivery.school_id))
            session.add(row)
            await session.commit()
        return DeliveryRecord.model_validate(row)

    async def get_delivery(self, delivery_id: str) -> Optional[DeliveryRecord]:
        async with self.session_factory() as session:
            row = await session.get(Delivery, delivery_id)
            return DeliveryRecord.model_validate(row) if row else None

    async def cas_delivery_status(
        self,
        delivery_id: str,
        expected: DeliveryStatus,
        new: DeliveryStatus,
        **fields,
    ) -> Optional[DeliveryRecord]:
        stmt = (
            update(Delivery)
            .where(Delivery.delivery_id == delivery_id, Delivery.status == expected.value)
            .values(status=new.value, **_values(fields))
            .returning(Delivery)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            await session.commit()
            return DeliveryRecord.model_validate(row) if row else None

    # ── Escrow ───────────────────────────────────────────────
    async def insert_escrow(self, escrow: EscrowRecord) -> EscrowRecord:
        row = EscrowTransaction(**_values(escrow.model_dump()))
        await self._insert(row)
        return EscrowRecord.model_validate(row)

    async def get_escrow(self, delivery_id: str) -> Optional[EscrowRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EscrowTransaction).where(EscrowTransaction.delivery_id == delivery_id)
            )
            row = result.scalars().first()
            return EscrowRecord.model_validate(row) if row else None

    async def cas_escrow_status(
        self,
        delivery_id: str,
        expected: Iterable[EscrowStatus],
        new: EscrowStatus,
        **fields,
    ) -> Optional[EscrowRecord]:
        stmt = (
            update(EscrowTransaction)
            .where(
                EscrowTransaction.delivery_id == delivery_id,
                EscrowTransaction.status.in_([s.value for s in expected]),
            )
            .values(status=new.value, **_values(fields))
            .returning(EscrowTransaction)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            await session.commit()
            return EscrowRecord.model_validate(row) if row else None

    async def append_audit(self, entry: EscrowAuditEntry) -> EscrowAuditEntry:
        await self._insert(EscrowAuditLog(**_values(entry.model_dump())))
        return entry

    async def list_audit(self, delivery_id: str) -> list[EscrowAuditEntry]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EscrowAuditLog)
                .where(EscrowAuditLog.delivery_id == delivery_id)
                .order_by(EscrowAuditLog.created_at)
            )
            return [EscrowAuditEntry.model_validate(r) for r in result.scalars().all()]

    # ── Verifications ────────────────────────────────────────
    async def insert_verification(self, verification: VerificationRecord) -> VerificationRecord:
        row = Verification(**_values(verification.model_dump()))
        await self._insert(row)
        return VerificationRecord.model_validate(row)

    async def get_approved_verification(self, delivery_id: str) -> Optional[VerificationRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Verification).where(
                    Verification.delivery_id == delivery_id,
                    Verification.status == VerificationStatus.APPROVED.value,
                )
            )
            row = result.scalars().first()
            return VerificationRecord.model_validate(row) if row else None

    # ── Issues ───────────────────────────────────────────────
    async def insert_issue(self, issue: IssueRecord) -> IssueRecord:
        row = Issue(**_values(issue.model_dump()))
        await self._insert(row)
        return IssueRecord.model_validate(row)

    async def get_issue(self, issue_id: str) -> Optional[IssueRecord]:
        async with self.session_factory() as session:
            row = await session.get(Issue, issue_id)
            return IssueRecord.model_validate(row) if row else None

    async def cas_issue(
        self,
        issue_id: str,
        expected_status: IssueStatus,
        expected_severity: IssueSeverity,
        **fields,
    ) -> Optional[IssueRecord]:
        stmt = (
            update(Issue)
            .where(
                Issue.issue_id == issue_id,
                Issue.status == expected_status.value,
                Issue.severity == expected_severity.value,
            )
            .values(**_values(fields))
            .returning(Issue)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            await session.commit()
            return IssueRecord.model_validate(row) if row else None

    async def list_blocking_issues(self, delivery_id: str) -> list[IssueRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Issue).where(
                    Issue.delivery_id == delivery_id,
                    Issue.severity.in_([s.value for s in BLOCKING_SEVERITIES]),
                    Issue.status.in_([s.value for s in UNRESOLVED_STATUSES]),
                )
            )
            return [IssueRecord.model_validate(r) for r in result.scalars().all()]

    async def list_issues_for_school(self, school_id: str) -> list[IssueRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Issue)
                .join(Delivery, Delivery.delivery_id == Issue.delivery_id)
                .where(Delivery.school_id == school_id)
                .order_by(Issue.created_at.desc())
            )
            return [IssueRecord.model_validate(r) for r in result.scalars().all()]

    # ── Schools ──────────────────────────────────────────────
    async def list_school_ids(self) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(select(School.school_id).order_by(School.school_id))
            return list(result.scalars().all())

    async def get_school(self, school_id: str) -> Optional[SchoolPriority]:
        async with self.session_factory() as session:
            row = await session.get(School, school_id)
            return SchoolPriority.model_validate(row) if row else None

    async def update_school_priority(self, school_id, score, reasoning, scored_at) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(School)
                .where(School.school_id == school_id)
                .values(
                    priority_score=score,
                    priority_reasoning=reasoning,
                    last_scored_at=scored_at,
                )
            )
            await session.commit()

    # ── Reconciliation ───────────────────────────────────────
    async def insert_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        row = ReconciliationQueueItem(**_values(item.model_dump()))
        await self._insert(row)
        return ReconciliationItem.model_validate(row)

    async def list_reconciliation_items(
        self,
        status: ReconciliationStatus = ReconciliationStatus.PENDING,
        limit: int = 50,
    ) -> list[ReconciliationItem]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReconciliationQueueItem)
                .where(ReconciliationQueueItem.status == status.value)
                .order_by(ReconciliationQueueItem.created_at)
                .limit(limit)
            )
            return [ReconciliationItem.model_validate(r) for r in result.scalars().all()]

    async def resolve_reconciliation_item(self, item_id, resolved_at) -> Optional[ReconciliationItem]:
        stmt = (
            update(ReconciliationQueueItem)
            .where(
                ReconciliationQueueItem.item_id == item_id,
                ReconciliationQueueItem.status == ReconciliationStatus.PENDING.value,
            )
            .values(status=ReconciliationStatus.RESOLVED.value, resolved_at=resolved_at)
            .returning(ReconciliationQueueItem)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).scalars().first()
            await session.commit()
            if row is None:
                logger.warning("reconciliation_item_not_pending", item_id=item_id)
            return ReconciliationItem.model_validate(row) if row else None
