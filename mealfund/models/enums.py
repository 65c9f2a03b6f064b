"""
Python enums matching PostgreSQL enum types.
Names and values MUST match the DB DDL exactly.
"""

from enum import Enum


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    DELIVERED = "delivered"
    VERIFIED = "verified"
    CANCELLED = "cancelled"


class EscrowStatus(str, Enum):
    LOCKED = "locked"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class IssueType(str, Enum):
    LATE_DELIVERY = "late_delivery"
    WRONG_PORTIONS = "wrong_portions"
    QUALITY_ISSUE = "quality_issue"
    MISSING_DELIVERY = "missing_delivery"
    OTHER = "other"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueStatus(str, Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class ReconciliationStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ScoreSource(str, Enum):
    """Which path produced an urgency score."""
    AI = "ai"
    FALLBACK = "fallback"
    RULES = "rules"


# Ordering used for forward-only checks
SEVERITY_RANK = {
    IssueSeverity.LOW: 0,
    IssueSeverity.MEDIUM: 1,
    IssueSeverity.HIGH: 2,
    IssueSeverity.CRITICAL: 3,
}

ISSUE_STATUS_RANK = {
    IssueStatus.OPEN: 0,
    IssueStatus.INVESTIGATING: 1,
    IssueStatus.RESOLVED: 2,
}

BLOCKING_SEVERITIES = frozenset({IssueSeverity.HIGH, IssueSeverity.CRITICAL})
UNRESOLVED_STATUSES = frozenset({IssueStatus.OPEN, IssueStatus.INVESTIGATING})
