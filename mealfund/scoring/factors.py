"""
Issue-history metrics and the rule-based urgency score.
Pure functions: same issues and clock give the same result.
"""

import math
from datetime import datetime, timedelta
from typing import Optional, Sequence

from pydantic import BaseModel

from mealfund.config import settings
from mealfund.models.enums import BLOCKING_SEVERITIES, IssueStatus
from mealfund.schemas.records import IssueRecord


class UrgencyFactors(BaseModel):
    issue_count: int = 0
    high_severity_count: int = 0
    unresolved_count: int = 0
    recent_issues: int = 0
    avg_resolution_days: float = 0.0


def compute_factors(
    issues: Sequence[IssueRecord],
    now: datetime,
    recent_days: Optional[int] = None,
) -> UrgencyFactors:
    if recent_days is None:
        recent_days = settings.SCORING_RECENT_DAYS
    cutoff = now - timedelta(days=recent_days)

    resolution_days = [
        (i.resolved_at - i.created_at).total_seconds() / 86400
        for i in issues
        if i.resolved_at is not None
    ]
    avg = sum(resolution_days) / len(resolution_days) if resolution_days else 0.0

    return UrgencyFactors(
        issue_count=len(issues),
        high_severity_count=sum(1 for i in issues if i.severity in BLOCKING_SEVERITIES),
        unresolved_count=sum(1 for i in issues if i.status != IssueStatus.RESOLVED),
        recent_issues=sum(1 for i in issues if i.created_at > cutoff),
        # Half-up to one decimal
        avg_resolution_days=math.floor(avg * 10 + 0.5) / 10,
    )


def fallback_score(factors: UrgencyFactors) -> int:
    """
    Rule-based score, 0-100:
      issues      3 each, max 30
      high/crit  10 each, max 30
      unresolved  5 each, max 25
      recent      5 each, max 15
    """
    score = (
        min(30, factors.issue_count * 3)
        + min(30, factors.high_severity_count * 10)
        + min(25, factors.unresolved_count * 5)
        + min(15, factors.recent_issues * 5)
    )
    return max(0, min(100, score))
