"""
Issue/Dispute Tracker.

Issues move forward only: status open → investigating → resolved, severity
low → medium → high → critical. An unresolved high/critical issue holds the
delivery's escrow; resolving the last one releases it if the school has
already verified receipt.
"""

import uuid
from datetime import datetime
from typing import Callable, Optional

import structlog

from mealfund.errors import InvalidTransition, NotFound, ValidationError
from mealfund.ledger.base import LedgerStore
from mealfund.models.enums import (
    BLOCKING_SEVERITIES,
    SEVERITY_RANK,
    UNRESOLVED_STATUSES,
    DeliveryStatus,
    IssueSeverity,
    IssueStatus,
    IssueType,
)
from mealfund.observability.metrics import issues_reported_total
from mealfund.schemas.records import IssueRecord
from mealfund.services.escrow import HELD_STATUSES, EscrowCoordinator, utcnow
from mealfund.services.outcomes import ResolutionOutcome, attempt_release

logger = structlog.get_logger(__name__)


class IssueTracker:

    def __init__(
        self,
        store: LedgerStore,
        escrow: EscrowCoordinator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.escrow = escrow
        self.clock = clock

    async def get(self, issue_id: str) -> IssueRecord:
        issue = await self.store.get_issue(issue_id)
        if issue is None:
            raise NotFound(f"Issue {issue_id} not found")
        return issue

    async def report(
        self,
        delivery_id: str,
        reported_by: str,
        issue_type: IssueType,
        description: str,
        severity: IssueSeverity = IssueSeverity.MEDIUM,
    ) -> IssueRecord:
        """Open an issue. High/critical severity disputes a locked escrow."""
        if not description or not description.strip():
            raise ValidationError("description is required")
        if not reported_by:
            raise ValidationError("reported_by is required")

        if await self.store.get_delivery(delivery_id) is None:
            raise NotFound(f"Delivery {delivery_id} not found")

        now = self.clock()
        issue = await self.store.insert_issue(IssueRecord(
            issue_id=str(uuid.uuid4()),
            delivery_id=delivery_id,
            reported_by=reported_by,
            issue_type=issue_type,
            description=description.strip(),
            severity=severity,
            status=IssueStatus.OPEN,
            created_at=now,
            updated_at=now,
        ))
        issues_reported_total.labels(severity=severity.value).inc()

        logger.info(
            "issue_reported",
            issue_id=issue.issue_id,
            delivery_id=delivery_id,
            issue_type=issue_type.value,
            severity=severity.value,
        )

        if severity in BLOCKING_SEVERITIES:
            await self._hold_escrow(issue, actor=reported_by)
        return issue

    async def investigate(self, issue_id: str) -> IssueRecord:
        issue = await self.get(issue_id)
        if issue.status != IssueStatus.OPEN:
            raise InvalidTransition("issue", issue_id, issue.status.value, IssueStatus.INVESTIGATING.value)

        updated = await self._cas(issue, IssueStatus.INVESTIGATING.value, status=IssueStatus.INVESTIGATING)
        logger.info("issue_investigating", issue_id=issue_id, delivery_id=issue.delivery_id)
        return updated

    async def escalate(self, issue_id: str, severity: IssueSeverity, actor: str = "system") -> IssueRecord:
        """Raise severity. Lowering it or touching a resolved issue is rejected."""
        issue = await self.get(issue_id)
        if issue.status not in UNRESOLVED_STATUSES:
            raise InvalidTransition("issue", issue_id, issue.status.value, f"severity:{severity.value}")
        if SEVERITY_RANK[severity] <= SEVERITY_RANK[issue.severity]:
            raise InvalidTransition("issue", issue_id, issue.severity.value, severity.value)

        updated = await self._cas(issue, severity.value, severity=severity)
        logger.info(
            "issue_escalated",
            issue_id=issue_id,
            delivery_id=issue.delivery_id,
            from_severity=issue.severity.value,
            to_severity=severity.value,
        )

        if severity in BLOCKING_SEVERITIES and issue.severity not in BLOCKING_SEVERITIES:
            await self._hold_escrow(updated, actor=actor)
        return updated

    async def resolve(
        self,
        issue_id: str,
        resolution_notes: str,
        actor: str = "system",
    ) -> ResolutionOutcome:
        """
        Resolve an issue. If that clears the last blocker on a held escrow
        and the delivery is verified, the deferred release runs here.
        A failed release leaves the issue resolved.
        """
        if not resolution_notes or not resolution_notes.strip():
            raise ValidationError("resolution_notes is required")

        issue = await self.get(issue_id)
        if issue.status not in UNRESOLVED_STATUSES:
            raise InvalidTransition("issue", issue_id, issue.status.value, IssueStatus.RESOLVED.value)

        now = self.clock()
        resolved = await self._cas(
            issue,
            IssueStatus.RESOLVED.value,
            status=IssueStatus.RESOLVED,
            resolution_notes=resolution_notes.strip(),
            resolved_at=now,
        )
        logger.info("issue_resolved", issue_id=issue_id, delivery_id=issue.delivery_id)

        if issue.severity not in BLOCKING_SEVERITIES:
            return ResolutionOutcome(issue=resolved)
        if await self.store.list_blocking_issues(issue.delivery_id):
            return ResolutionOutcome(issue=resolved)

        escrow = await self.escrow.get(issue.delivery_id)
        delivery = await self.store.get_delivery(issue.delivery_id)
        if (
            escrow is None
            or escrow.status not in HELD_STATUSES
            or delivery is None
            or delivery.status != DeliveryStatus.VERIFIED
        ):
            return ResolutionOutcome(issue=resolved)

        logger.info("deferred_release_triggered", issue_id=issue_id, delivery_id=issue.delivery_id)
        attempt = await attempt_release(self.escrow, issue.delivery_id, actor=actor)
        return ResolutionOutcome(issue=resolved, release_attempted=True, **attempt.model_dump())

    async def _cas(self, issue: IssueRecord, target: str, **fields) -> IssueRecord:
        updated = await self.store.cas_issue(
            issue.issue_id,
            issue.status,
            issue.severity,
            updated_at=self.clock(),
            **fields,
        )
        if updated is None:
            latest = await self.store.get_issue(issue.issue_id)
            current = f"{latest.status.value}/{latest.severity.value}" if latest else None
            raise InvalidTransition("issue", issue.issue_id, current, target)
        return updated

    async def _hold_escrow(self, issue: IssueRecord, actor: str) -> Optional[str]:
        held = await self.escrow.hold(
            issue.delivery_id, actor=actor, reason=f"issue {issue.issue_id} ({issue.severity.value})"
        )
        if held is None:
            logger.info("issue_no_escrow_to_hold", issue_id=issue.issue_id, delivery_id=issue.delivery_id)
            return None
        return held.escrow_id
