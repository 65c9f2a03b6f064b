"""
In-memory ledger store for tests and local runs without PostgreSQL.
Single-process only: per-delivery locks are asyncio locks, and every
compare-and-set runs without an await so it is atomic on the event loop.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

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
from mealfund.schemas.records import (
    DeliveryRecord,
    EscrowAuditEntry,
    EscrowRecord,
    IssueRecord,
    ReconciliationItem,
    SchoolPriority,
    VerificationRecord,
)


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed ledger. Records are copied on the way in and out."""

    def __init__(self):
        self.deliveries: dict[str, DeliveryRecord] = {}
        self.escrows: dict[str, EscrowRecord] = {}
        self.audit: list[EscrowAuditEntry] = []
        self.verifications: list[VerificationRecord] = []
        self.issues: dict[str, IssueRecord] = {}
        self.schools: dict[str, SchoolPriority] = {}
        self.reconciliation: dict[str, ReconciliationItem] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def register_school(self, school_id: str, name: Optional[str] = None) -> SchoolPriority:
        school = SchoolPriority(school_id=school_id, name=name)
        self.schools[school_id] = school
        return school.model_copy()

    @asynccontextmanager
    async def lock_delivery(self, delivery_id: str) -> AsyncIterator[None]:
        async with self._locks[delivery_id]:
            yield

    # ── Deliveries ───────────────────────────────────────────
    async def insert_delivery(self, delivery: DeliveryRecord) -> DeliveryRecord:
        self.deliveries[delivery.delivery_id] = delivery.model_copy()
        if delivery.school_id not in self.schools:
            self.schools[delivery.school_id] = SchoolPriority(school_id=delivery.school_id)
        return delivery.model_copy()

    async def get_delivery(self, delivery_id: str) -> Optional[DeliveryRecord]:
        stored = self.deliveries.get(delivery_id)
        return stored.model_copy() if stored else None

    async def cas_delivery_status(
        self,
        delivery_id: str,
        expected: DeliveryStatus,
        new: DeliveryStatus,
        **fields,
    ) -> Optional[DeliveryRecord]:
        stored = self.deliveries.get(delivery_id)
        if stored is None or stored.status != expected:
            return None
        updated = stored.model_copy(update={**fields, "status": new})
        self.deliveries[delivery_id] = updated
        return updated.model_copy()

    # ── Escrow ───────────────────────────────────────────────
    async def insert_escrow(self, escrow: EscrowRecord) -> EscrowRecord:
        if escrow.delivery_id in self.escrows:
            raise ValueError(f"escrow already stored for delivery {escrow.delivery_id}")
        self.escrows[escrow.delivery_id] = escrow.model_copy()
        return escrow.model_copy()

    async def get_escrow(self, delivery_id: str) -> Optional[EscrowRecord]:
        stored = self.escrows.get(delivery_id)
        return stored.model_copy() if stored else None

    async def cas_escrow_status(
        self,
        delivery_id: str,
        expected: Iterable[EscrowStatus],
        new: EscrowStatus,
        **fields,
    ) -> Optional[EscrowRecord]:
        stored = self.escrows.get(delivery_id)
        if stored is None or stored.status not in set(expected):
            return None
        updated = stored.model_copy(update={**fields, "status": new})
        self.escrows[delivery_id] = updated
        return updated.model_copy()

    async def append_audit(self, entry: EscrowAuditEntry) -> EscrowAuditEntry:
        self.audit.append(entry)
        return entry

    async def list_audit(self, delivery_id: str) -> list[EscrowAuditEntry]:
        return [e for e in self.audit if e.delivery_id == delivery_id]

    # ── Verifications ────────────────────────────────────────
    async def insert_verification(self, verification: VerificationRecord) -> VerificationRecord:
        self.verifications.append(verification.model_copy())
        return verification.model_copy()

    async def get_approved_verification(self, delivery_id: str) -> Optional[VerificationRecord]:
        for v in self.verifications:
            if v.delivery_id == delivery_id and v.status == VerificationStatus.APPROVED:
                return v.model_copy()
        return None

    # ── Issues ───────────────────────────────────────────────
    async def insert_issue(self, issue: IssueRecord) -> IssueRecord:
        self.issues[issue.issue_id] = issue.model_copy()
        return issue.model_copy()

    async def get_issue(self, issue_id: str) -> Optional[IssueRecord]:
        stored = self.issues.get(issue_id)
        return stored.model_copy() if stored else None

    async def cas_issue(
        self,
        issue_id: str,
        expected_status: IssueStatus,
        expected_severity: IssueSeverity,
        **fields,
    ) -> Optional[IssueRecord]:
        stored = self.issues.get(issue_id)
        if stored is None:
            return None
        if stored.status != expected_status or stored.severity != expected_severity:
            return None
        updated = stored.model_copy(update=fields)
        self.issues[issue_id] = updated
        return updated.model_copy()

    async def list_blocking_issues(self, delivery_id: str) -> list[IssueRecord]:
        return [
            i.model_copy()
            for i in self.issues.values()
            if i.delivery_id == delivery_id
            and i.severity in BLOCKING_SEVERITIES
            and i.status in UNRESOLVED_STATUSES
        ]

    async def list_issues_for_school(self, school_id: str) -> list[IssueRecord]:
        delivery_ids = {
            d.delivery_id for d in self.deliveries.values() if d.school_id == school_id
        }
        issues = [i.model_copy() for i in self.issues.values() if i.delivery_id in delivery_ids]
        return sorted(issues, key=lambda i: i.created_at, reverse=True)

    # ── Schools ──────────────────────────────────────────────
    async def list_school_ids(self) -> list[str]:
        return sorted(self.schools)

    async def get_school(self, school_id: str) -> Optional[SchoolPriority]:
        stored = self.schools.get(school_id)
        return stored.model_copy() if stored else None

    async def update_school_priority(self, school_id, score, reasoning, scored_at) -> None:
        current = self.schools.get(school_id) or SchoolPriority(school_id=school_id)
        self.schools[school_id] = current.model_copy(update={
            "priority_score": float(score),
            "priority_reasoning": reasoning,
            "last_scored_at": scored_at,
        })

    # ── Reconciliation ───────────────────────────────────────
    async def insert_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        self.reconciliation[item.item_id] = item.model_copy()
        return item.model_copy()

    async def list_reconciliation_items(
        self,
        status: ReconciliationStatus = ReconciliationStatus.PENDING,
        limit: int = 50,
    ) -> list[ReconciliationItem]:
        items = sorted(
            (i for i in self.reconciliation.values() if i.status == status),
            key=lambda i: i.created_at,
        )
        return [i.model_copy() for i in items[:limit]]

    async def resolve_reconciliation_item(self, item_id, resolved_at) -> Optional[ReconciliationItem]:
        stored = self.reconciliation.get(item_id)
        if stored is None or stored.status != ReconciliationStatus.PENDING:
            return None
        updated = stored.model_copy(update={
            "status": ReconciliationStatus.RESOLVED,
            "resolved_at": resolved_at,
        })
        self.reconciliation[item_id] = updated
        return updated.model_copy()
