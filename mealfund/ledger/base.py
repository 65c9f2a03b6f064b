"""
Abstract ledger store.
Every backend must hand back the records in mealfund.schemas.records.
"""

from abc import ABC, abstractmethod
from typing import AsyncContextManager, Iterable, Optional

from mealfund.models.enums import (
    DeliveryStatus,
    EscrowStatus,
    IssueSeverity,
    IssueStatus,
    ReconciliationStatus,
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


class LedgerStore(ABC):
    """
    Single source of truth for deliveries, escrow, verifications and issues.

    Every backend must:
    1. Make each compare-and-set (cas_*) atomic on a single row: the write
       happens only if the stored status matches, and None is returned
       otherwise (lost race or missing row).
    2. Provide lock_delivery(), a per-delivery single-writer section used for
       check-then-act sequences (escrow mutations, verification submit).
    3. Never cache authoritative state across calls.
    4. Treat the escrow audit log as append-only.
    """

    # ── Serialization ────────────────────────────────────────
    @abstractmethod
    def lock_delivery(self, delivery_id: str) -> AsyncContextManager[None]:
        """Hold an exclusive per-delivery lock for the duration of the block."""
        ...

    # ── Deliveries ───────────────────────────────────────────
    @abstractmethod
    async def insert_delivery(self, delivery: DeliveryRecord) -> DeliveryRecord:
        ...

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> Optional[DeliveryRecord]:
        ...

    @abstractmethod
    async def cas_delivery_status(
        self,
        delivery_id: str,
        expected: DeliveryStatus,
        new: DeliveryStatus,
        **fields,
    ) -> Optional[DeliveryRecord]:
        """Set status=new (plus extra column values) only if status == expected."""
        ...

    # ── Escrow ───────────────────────────────────────────────
    @abstractmethod
    async def insert_escrow(self, escrow: EscrowRecord) -> EscrowRecord:
        ...

    @abstractmethod
    async def get_escrow(self, delivery_id: str) -> Optional[EscrowRecord]:
        ...

    @abstractmethod
    async def cas_escrow_status(
        self,
        delivery_id: str,
        expected: Iterable[EscrowStatus],
        new: EscrowStatus,
        **fields,
    ) -> Optional[EscrowRecord]:
        """Set status=new only if the current status is one of expected."""
        ...

    @abstractmethod
    async def append_audit(self, entry: EscrowAuditEntry) -> EscrowAuditEntry:
        ...

    @abstractmethod
    async def list_audit(self, delivery_id: str) -> list[EscrowAuditEntry]:
        """Audit entries for a delivery, oldest first."""
        ...

    # ── Verifications ────────────────────────────────────────
    @abstractmethod
    async def insert_verification(self, verification: VerificationRecord) -> VerificationRecord:
        ...

    @abstractmethod
    async def get_approved_verification(self, delivery_id: str) -> Optional[VerificationRecord]:
        ...

    # ── Issues ───────────────────────────────────────────────
    @abstractmethod
    async def insert_issue(self, issue: IssueRecord) -> IssueRecord:
        ...

    @abstractmethod
    async def get_issue(self, issue_id: str) -> Optional[IssueRecord]:
        ...

    @abstractmethod
    async def cas_issue(
        self,
        issue_id: str,
        expected_status: IssueStatus,
        expected_severity: IssueSeverity,
        **fields,
    ) -> Optional[IssueRecord]:
        """Update an issue only if both status and severity still match."""
        ...

    @abstractmethod
    async def list_blocking_issues(self, delivery_id: str) -> list[IssueRecord]:
        """Unresolved high/critical issues on a delivery."""
        ...

    @abstractmethod
    async def list_issues_for_school(self, school_id: str) -> list[IssueRecord]:
        """All issues on the school's deliveries, newest first."""
        ...

    # ── Schools ──────────────────────────────────────────────
    @abstractmethod
    async def list_school_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def get_school(self, school_id: str) -> Optional[SchoolPriority]:
        ...

    @abstractmethod
    async def update_school_priority(
        self,
        school_id: str,
        score: float,
        reasoning: str,
        scored_at,
    ) -> None:
        """Write score, reasoning and timestamp in one row update."""
        ...

    # ── Reconciliation ───────────────────────────────────────
    @abstractmethod
    async def insert_reconciliation_item(self, item: ReconciliationItem) -> ReconciliationItem:
        ...

    @abstractmethod
    async def list_reconciliation_items(
        self,
        status: ReconciliationStatus = ReconciliationStatus.PENDING,
        limit: int = 50,
    ) -> list[ReconciliationItem]:
        ...

    @abstractmethod
    async def resolve_reconciliation_item(self, item_id: str, resolved_at) -> Optional[ReconciliationItem]:
        ...
