"""
Pydantic request/response schemas for the /api/v1 endpoints.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from mealfund.models.enums import IssueSeverity, IssueType
from mealfund.schemas.records import (
    DeliveryRecord,
    EscrowAuditEntry,
    EscrowRecord,
    IssueRecord,
    ReconciliationItem,
    VerificationRecord,
)


# ── Request Schemas ──────────────────────────────────────────

class DeliveryCreateRequest(BaseModel):
    school_id: str
    catering_id: str
    delivery_date: date
    portions: int
    amount: Decimal
    notes: Optional[str] = None


class DeliveryAmendRequest(BaseModel):
    """Only while the delivery is pending."""
    portions: Optional[int] = None
    amount: Optional[Decimal] = None
    notes: Optional[str] = None


class DeliveryCancelRequest(BaseModel):
    reason: str
    actor: str = "system"


class VerificationSubmitRequest(BaseModel):
    """Receipt confirmation from the school."""
    delivery_id: str
    school_id: str
    portions_received: int
    quality_rating: int
    notes: Optional[str] = None
    photo_ref: Optional[str] = None
    verified_by: Optional[str] = None


class IssueReportRequest(BaseModel):
    delivery_id: str
    reported_by: str
    issue_type: IssueType
    description: str
    severity: IssueSeverity = IssueSeverity.MEDIUM


class IssueResolveRequest(BaseModel):
    resolution_notes: str
    actor: str = "system"


class IssueEscalateRequest(BaseModel):
    severity: IssueSeverity
    actor: str = "system"


class EscrowReleaseRequest(BaseModel):
    actor: str = "admin"
    override_dispute: bool = False


class EscrowActionRequest(BaseModel):
    """Dispute or refund."""
    actor: str = "admin"
    reason: Optional[str] = None


class ScoringJobRequest(BaseModel):
    use_ai: bool = True
    school_ids: Optional[list[str]] = None


# ── Response Schemas ─────────────────────────────────────────

class ScheduleResponse(BaseModel):
    delivery: DeliveryRecord
    escrow: EscrowRecord


class CancelResponse(BaseModel):
    delivery: DeliveryRecord
    escrow: Optional[EscrowRecord] = None


class VerificationSubmitResponse(BaseModel):
    verification: VerificationRecord
    payment_state: str
    settlement_reference: Optional[str] = None
    release_error: Optional[str] = None
    release_error_code: Optional[str] = None


class IssueResolveResponse(BaseModel):
    issue: IssueRecord
    release_attempted: bool
    payment_state: Optional[str] = None
    settlement_reference: Optional[str] = None
    release_error: Optional[str] = None


class EscrowDetail(BaseModel):
    escrow: EscrowRecord
    audit: list[EscrowAuditEntry]


class ReconciliationListResponse(BaseModel):
    items: list[ReconciliationItem]
    limit: int


class ScoringJobResponse(BaseModel):
    job_id: str
    status: str = "queued"


class ScoringJobStatus(BaseModel):
    job_id: str
    status: str
    result: Optional[dict] = None
    error_message: Optional[str] = None


class ErrorResponse(BaseModel):
    error_code: str
    detail: str
    issue_ids: list[str] = Field(default_factory=list)
