"""
Ledger records.
These are what the ledger store hands to the services. Both store backends
MUST produce them; services never touch ORM rows directly.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from mealfund.models.enums import (
    DeliveryStatus,
    EscrowStatus,
    IssueSeverity,
    IssueStatus,
    IssueType,
    ReconciliationStatus,
    VerificationStatus,
)


class DeliveryRecord(BaseModel):
    delivery_id: str
    school_id: str
    catering_id: str
    delivery_date: date
    portions: int = Field(gt=0)
    amount: Decimal = Field(gt=0)
    status: DeliveryStatus = DeliveryStatus.PENDING
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class EscrowRecord(BaseModel):
    escrow_id: str
    delivery_id: str
    school_id: str
    catering_id: str
    amount: Decimal
    status: EscrowStatus
    locked_at: datetime
    released_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    external_tx_ref: Optional[str] = None
    external_block_ref: Optional[str] = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class EscrowAuditEntry(BaseModel):
    """Immutable record of one escrow state change."""
    audit_id: str
    escrow_id: str
    delivery_id: str
    old_status: Optional[EscrowStatus] = None
    new_status: EscrowStatus
    actor: str
    external_tx_ref: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True, "frozen": True}


class VerificationRecord(BaseModel):
    verification_id: str
    delivery_id: str
    school_id: str
    verified_by: str
    status: VerificationStatus
    portions_received: int = Field(ge=0)
    portions_shortfall: int = 0
    quality_rating: int = Field(ge=1, le=5)
    notes: Optional[str] = None
    photo_ref: Optional[str] = None
    verified_at: datetime

    model_config = {"from_attributes": True}


class IssueRecord(BaseModel):
    issue_id: str
    delivery_id: str
    reported_by: str
    issue_type: IssueType
    description: str
    severity: IssueSeverity = IssueSeverity.MEDIUM
    status: IssueStatus = IssueStatus.OPEN
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SchoolPriority(BaseModel):
    school_id: str
    name: Optional[str] = None
    priority_score: Optional[float] = None
    priority_reasoning: Optional[str] = None
    last_scored_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReconciliationItem(BaseModel):
    item_id: str
    delivery_id: str
    escrow_id: Optional[str] = None
    operation: str
    reason: str
    details: Optional[str] = None
    status: ReconciliationStatus = ReconciliationStatus.PENDING
    created_at: datetime
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
