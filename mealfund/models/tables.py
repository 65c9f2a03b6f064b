"""
SQLAlchemy ORM models for the escrow ledger.
Primary keys are PostgreSQL UUIDs handled as strings; school and catering
ids are external registry references.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import ENUM, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealfund.models.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


DELIVERY_STATUS = ENUM(
    'pending', 'scheduled', 'delivered', 'verified', 'cancelled',
    name='delivery_status_enum',
)
ESCROW_STATUS = ENUM(
    'locked', 'released', 'disputed', 'refunded',
    name='escrow_status_enum',
)
VERIFICATION_STATUS = ENUM(
    'pending', 'approved', 'rejected',
    name='verification_status_enum',
)
ISSUE_TYPE = ENUM(
    'late_delivery', 'wrong_portions', 'quality_issue', 'missing_delivery', 'other',
    name='issue_type_enum',
)
ISSUE_SEVERITY = ENUM(
    'low', 'medium', 'high', 'critical',
    name='issue_severity_enum',
)
ISSUE_STATUS = ENUM(
    'open', 'investigating', 'resolved',
    name='issue_status_enum',
)
RECONCILIATION_STATUS = ENUM(
    'pending', 'resolved',
    name='reconciliation_status_enum',
)


# ────────────────────────────────────────────────────────────
# SCHOOLS (priority subset)
# ────────────────────────────────────────────────────────────
class School(Base):
    __tablename__ = "schools"

    school_id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    priority_reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_scored_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("idx_schools_priority", "priority_score"),
    )


# ────────────────────────────────────────────────────────────
# DELIVERIES
# ────────────────────────────────────────────────────────────
class Delivery(Base):
    __tablename__ = "deliveries"

    delivery_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=_new_id,
        server_default=text("gen_random_uuid()")
    )
    school_id: Mapped[str] = mapped_column(Text, nullable=False)
    catering_id: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_date: Mapped[date] = mapped_column(Date, nullable=False)
    portions: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        DELIVERY_STATUS, nullable=False, default="pending", server_default="pending"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    # Relationships
    escrow = relationship("EscrowTransaction", back_populates="delivery", uselist=False)
    issues = relationship("Issue", back_populates="delivery")

    __table_args__ = (
        Index("idx_deliveries_school", "school_id"),
        Index("idx_deliveries_status", "status"),
        Index("idx_deliveries_date", "delivery_date"),
    )


# ────────────────────────────────────────────────────────────
# ESCROW TRANSACTIONS
# ────────────────────────────────────────────────────────────
class EscrowTransaction(Base):
    __tablename__ = "escrow_transactions"

    escrow_id: Mapped[str] = mapped_column(Text, primary_key=True)
    delivery_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("deliveries.delivery_id"), nullable=False
    )
    school_id: Mapped[str] = mapped_column(Text, nullable=False)
    catering_id: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    status: Mapped[str] = mapped_column(ESCROW_STATUS, nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    disputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    external_tx_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_block_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    # Relationships
    delivery = relationship("Delivery", back_populates="escrow")

    __table_args__ = (
        # One escrow per delivery
        UniqueConstraint("delivery_id", name="uq_escrow_delivery"),
        Index("idx_escrow_status", "status"),
    )


# ────────────────────────────────────────────────────────────
# ESCROW AUDIT LOG (append-only)
# ────────────────────────────────────────────────────────────
class EscrowAuditLog(Base):
    __tablename__ = "escrow_audit_log"

    audit_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=_new_id,
        server_default=text("gen_random_uuid()")
    )
    escrow_id: Mapped[str] = mapped_column(
        Text, ForeignKey("escrow_transactions.escrow_id"), nullable=False
    )
    delivery_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    old_status: Mapped[Optional[str]] = mapped_column(ESCROW_STATUS, nullable=True)
    new_status: Mapped[str] = mapped_column(ESCROW_STATUS, nullable=False)
    actor: Mapped[str] = mapped_column(Text, nullable=False)
    external_tx_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_audit_escrow", "escrow_id", "created_at"),
        Index("idx_audit_delivery", "delivery_id"),
    )


# ────────────────────────────────────────────────────────────
# VERIFICATIONS
# ────────────────────────────────────────────────────────────
class Verification(Base):
    __tablename__ = "verifications"

    verification_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=_new_id,
        server_default=text("gen_random_uuid()")
    )
    delivery_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("deliveries.delivery_id"), nullable=False
    )
    school_id: Mapped[str] = mapped_column(Text, nullable=False)
    verified_by: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        VERIFICATION_STATUS, nullable=False, default="approved", server_default="approved"
    )
    portions_received: Mapped[int] = mapped_column(Integer, nullable=False)
    portions_shortfall: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    quality_rating: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    photo_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_verifications_delivery", "delivery_id"),
        # At most one approved verification per delivery
        Index(
            "uq_verifications_approved", "delivery_id", unique=True,
            postgresql_where=text("status = 'approved'"),
        ),
    )


# ────────────────────────────────────────────────────────────
# ISSUES
# ────────────────────────────────────────────────────────────
class Issue(Base):
    __tablename__ = "issues"

    issue_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=_new_id,
        server_default=text("gen_random_uuid()")
    )
    delivery_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("deliveries.delivery_id"), nullable=False
    )
    reported_by: Mapped[str] = mapped_column(Text, nullable=False)
    issue_type: Mapped[str] = mapped_column(ISSUE_TYPE, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(
        ISSUE_SEVERITY, nullable=False, default="medium", server_default="medium"
    )
    status: Mapped[str] = mapped_column(
        ISSUE_STATUS, nullable=False, default="open", server_default="open"
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    # Relationships
    delivery = relationship("Delivery", back_populates="issues")

    __table_args__ = (
        Index("idx_issues_delivery", "delivery_id"),
        Index("idx_issues_blocking", "delivery_id", "severity", "status"),
        Index("idx_issues_created", "created_at"),
    )


# ────────────────────────────────────────────────────────────
# RECONCILIATION QUEUE
# ────────────────────────────────────────────────────────────
class ReconciliationQueueItem(Base):
    __tablename__ = "reconciliation_queue"

    item_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=_new_id,
        server_default=text("gen_random_uuid()")
    )
    delivery_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    escrow_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    operation: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        RECONCILIATION_STATUS, nullable=False, default="pending", server_default="pending"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_reconciliation_pending", "status", postgresql_where=text("status = 'pending'")),
        Index("idx_reconciliation_delivery", "delivery_id"),
    )
