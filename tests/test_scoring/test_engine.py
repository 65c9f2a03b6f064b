"""
Tests for the urgency scoring engine, single school and batch.
"""

import asyncio
from datetime import timedelta

from conftest import NOW, FailingAdvisor, FrozenClock, ScriptedAdvisor
from mealfund.ledger.memory import InMemoryLedgerStore
from mealfund.models.enums import IssueSeverity, IssueStatus, IssueType, ScoreSource
from mealfund.schemas.records import IssueRecord
from mealfund.scoring.engine import UrgencyScoringEngine


def scenario_d_issues():
    """6 issues: 2 critical, 3 unresolved, 4 in the last 30 days, 2-day average resolution."""
    layout = [
        (IssueSeverity.CRITICAL, IssueStatus.OPEN, 2),
        (IssueSeverity.CRITICAL, IssueStatus.RESOLVED, 5),
        (IssueSeverity.MEDIUM, IssueStatus.OPEN, 10),
        (IssueSeverity.LOW, IssueStatus.INVESTIGATING, 20),
        (IssueSeverity.LOW, IssueStatus.RESOLVED, 45),
        (IssueSeverity.MEDIUM, IssueStatus.RESOLVED, 60),
    ]
    issues = []
    for n, (severity, status, age) in enumerate(layout):
        created = NOW - timedelta(days=age)
        issues.append(IssueRecord(
            issue_id=f"i{n}",
            delivery_id="d1",
            reported_by="school-1",
            issue_type=IssueType.QUALITY_ISSUE,
            description="x",
            severity=severity,
            status=status,
            resolved_at=created + timedelta(days=2) if status == IssueStatus.RESOLVED else None,
            created_at=created,
            updated_at=created,
        ))
    return issues


def engine_with(advisor, store=None, **kwargs):
    return UrgencyScoringEngine(store or InMemoryLedgerStore(), advisor, clock=FrozenClock(), **kwargs)


class TestScore:

    def test_ai_path(self):
        advisor = ScriptedAdvisor("SCORE: 81\nREASONING: critical backlog")
        result = asyncio.run(engine_with(advisor).score("school-1", scenario_d_issues(), "SD Negeri 1"))

        assert result.source == ScoreSource.AI
        assert result.score == 81
        assert result.reasoning == "critical backlog"
        assert "SD Negeri 1" in advisor.prompts[0]
        assert "[CRITICAL]" in advisor.prompts[0]

    def test_timeout_falls_back_scenario_d(self):
        advisor = ScriptedAdvisor("SCORE: 10\nREASONING: late", delay=1.0)
        engine = engine_with(advisor, timeout_seconds=0.01)

        result = asyncio.run(engine.score("school-1", scenario_d_issues()))

        assert result.source == ScoreSource.FALLBACK
        assert result.score == 68
        assert result.factors.avg_resolution_days == 2.0
        assert "rule-based" in result.reasoning

    def test_provider_error_falls_back(self):
        result = asyncio.run(engine_with(FailingAdvisor()).score("school-1", scenario_d_issues()))
        assert result.source == ScoreSource.FALLBACK
        assert result.score == 68

    def test_unparseable_reply_falls_back(self):
        result = asyncio.run(engine_with(ScriptedAdvisor("no idea")).score("school-1", scenario_d_issues()))
        assert result.source == ScoreSource.FALLBACK
        assert result.score == 68

    def test_ai_disabled_uses_rules(self):
        advisor = ScriptedAdvisor("SCORE: 99\nREASONING: x")
        result = asyncio.run(engine_with(advisor).score("school-1", scenario_d_issues(), use_ai=False))
        assert result.source == ScoreSource.RULES
        assert result.score == 68
        assert advisor.prompts == []

    def test_score_always_int_in_range(self):
        replies = ["SCORE: 500\nREASONING: x", "SCORE: 0\nREASONING: x", "", "SCORE: nope"]
        for reply in replies:
            result = asyncio.run(engine_with(ScriptedAdvisor(reply)).score("s", scenario_d_issues()))
            assert isinstance(result.score, int)
            assert 0 <= result.score <= 100


class FlakyLookupStore(InMemoryLedgerStore):
    def __init__(self, failing: str):
        super().__init__()
        self.failing = failing

    async def list_issues_for_school(self, school_id):
        if school_id == self.failing:
            raise RuntimeError("issues query failed")
        return await super().list_issues_for_school(school_id)


class TestBatchScore:

    def test_one_failing_lookup_keeps_every_entry(self):
        store = FlakyLookupStore(failing="school-13")
        ids = [f"school-{n}" for n in range(25)]
        for sid in ids:
            store.register_school(sid)

        advisor = ScriptedAdvisor("SCORE: 40\nREASONING: steady", delay=0.01)
        results = asyncio.run(engine_with(advisor, store=store, concurrency=20).batch_score(ids))

        assert len(results) == 25
        assert set(results) == set(ids)
        assert results["school-13"].score == 0
        assert results["school-13"].source == ScoreSource.FALLBACK
        assert all(results[sid].score == 40 for sid in ids if sid != "school-13")

    def test_concurrency_bound(self):
        store = InMemoryLedgerStore()
        ids = [f"school-{n}" for n in range(25)]
        for sid in ids:
            store.register_school(sid)

        advisor = ScriptedAdvisor("SCORE: 5\nREASONING: ok", delay=0.01)
        asyncio.run(engine_with(advisor, store=store, concurrency=20).batch_score(ids))

        assert advisor.max_in_flight == 20

    def test_rules_batch(self):
        store = InMemoryLedgerStore()
        store.register_school("a")
        store.register_school("b")
        results = asyncio.run(engine_with(None, store=store).batch_score(["a", "b", "a"], use_ai=False))
        assert set(results) == {"a", "b"}
        assert all(r.source == ScoreSource.RULES for r in results.values())
