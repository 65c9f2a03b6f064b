"""
Tests for issue metrics and the rule-based score.
"""

from datetime import timedelta

import pytest

from conftest import NOW
from mealfund.models.enums import IssueSeverity, IssueStatus, IssueType
from mealfund.schemas.records import IssueRecord
from mealfund.scoring.factors import UrgencyFactors, compute_factors, fallback_score


def make_issue(n, severity=IssueSeverity.LOW, status=IssueStatus.OPEN, age_days=1, resolved_after_days=None):
    created = NOW - timedelta(days=age_days)
    return IssueRecord(
        issue_id=f"issue-{n}",
        delivery_id="d1",
        reported_by="school-1",
        issue_type=IssueType.OTHER,
        description="x",
        severity=severity,
        status=status,
        resolved_at=created + timedelta(days=resolved_after_days) if resolved_after_days is not None else None,
        created_at=created,
        updated_at=created,
    )


class TestComputeFactors:

    def test_no_issues(self):
        factors = compute_factors([], NOW)
        assert factors == UrgencyFactors()
        assert fallback_score(factors) == 0

    def test_counts(self):
        issues = [
            make_issue(1, IssueSeverity.CRITICAL),
            make_issue(2, IssueSeverity.HIGH, IssueStatus.INVESTIGATING),
            make_issue(3, IssueSeverity.MEDIUM, IssueStatus.RESOLVED, age_days=40, resolved_after_days=3),
        ]
        factors = compute_factors(issues, NOW)
        assert factors.issue_count == 3
        assert factors.high_severity_count == 2
        assert factors.unresolved_count == 2
        assert factors.recent_issues == 2
        assert factors.avg_resolution_days == 3.0

    def test_average_resolution_rounded_to_one_decimal(self):
        issues = [
            make_issue(1, status=IssueStatus.RESOLVED, resolved_after_days=1),
            make_issue(2, status=IssueStatus.RESOLVED, resolved_after_days=2),
            make_issue(3, status=IssueStatus.RESOLVED, resolved_after_days=2),
        ]
        assert compute_factors(issues, NOW).avg_resolution_days == 1.7

    def test_recent_window_is_exclusive(self):
        factors = compute_factors([make_issue(1, age_days=30)], NOW)
        assert factors.recent_issues == 0


class TestFallbackScore:

    def test_scenario_d(self):
        factors = UrgencyFactors(
            issue_count=6, high_severity_count=2, unresolved_count=3, recent_issues=4, avg_resolution_days=2.0
        )
        assert fallback_score(factors) == 68

    def test_caps_at_100(self):
        factors = UrgencyFactors(
            issue_count=50, high_severity_count=50, unresolved_count=50, recent_issues=50
        )
        assert fallback_score(factors) == 100

    @pytest.mark.parametrize("count,expected", [(1, 3), (5, 15), (10, 30), (11, 30)])
    def test_issue_count_component(self, count, expected):
        assert fallback_score(UrgencyFactors(issue_count=count)) == expected
