"""
Urgency Scoring Engine.

Score one school:
1. Compute factors from its issue history
2. Ask the advisor (bounded by AI_TIMEOUT_SECONDS) and parse the reply
3. On any advisor failure or unparseable reply, use the rule-based score

Batch scoring runs fixed-size groups concurrently. One school's failure
never affects another's result, and every requested id gets an entry.
"""

import asyncio
import time
from datetime import datetime
from typing import Callable, Optional, Sequence

import structlog
from pydantic import BaseModel

from mealfund.advisor.base import AIAdvisor
from mealfund.config import settings
from mealfund.ledger.base import LedgerStore
from mealfund.models.enums import ScoreSource
from mealfund.observability.metrics import (
    advisor_latency_seconds,
    batch_scoring_duration_seconds,
    urgency_scores_total,
)
from mealfund.schemas.records import IssueRecord
from mealfund.scoring.factors import UrgencyFactors, compute_factors, fallback_score
from mealfund.scoring.parser import Parsed, parse_advisor_response
from mealfund.scoring.prompt import render_urgency_prompt
from mealfund.services.escrow import utcnow

logger = structlog.get_logger(__name__)


class UrgencyResult(BaseModel):
    school_id: str
    score: int
    reasoning: str
    factors: UrgencyFactors
    source: ScoreSource
    ai_analysis: Optional[str] = None


class UrgencyScoringEngine:

    def __init__(
        self,
        store: LedgerStore,
        advisor: Optional[AIAdvisor] = None,
        clock: Callable[[], datetime] = utcnow,
        concurrency: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        self.store = store
        self.advisor = advisor
        self.clock = clock
        self.concurrency = concurrency or settings.SCORING_CONCURRENCY
        self.timeout_seconds = timeout_seconds or settings.AI_TIMEOUT_SECONDS
        self.max_tokens = max_tokens or settings.AI_MAX_TOKENS

    # ── Single school ────────────────────────────────────────
    async def score(
        self,
        school_id: str,
        issues: Sequence[IssueRecord],
        school_name: Optional[str] = None,
        use_ai: bool = True,
    ) -> UrgencyResult:
        factors = compute_factors(issues, self.clock())

        if not use_ai or self.advisor is None:
            return self._result(
                school_id, factors, ScoreSource.RULES,
                "Rule-based scoring (AI disabled)", "AI disabled",
            )

        prompt = render_urgency_prompt(school_name or school_id, factors, issues)
        started = time.monotonic()
        try:
            text = await asyncio.wait_for(
                self.advisor.complete(prompt, self.max_tokens),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("advisor_timeout", school_id=school_id, timeout=self.timeout_seconds)
            return self._fallback(school_id, factors, "advisor timed out")
        except Exception as e:
            logger.warning("advisor_failed", school_id=school_id, error=str(e))
            return self._fallback(school_id, factors, "advisor call failed")
        finally:
            advisor_latency_seconds.observe(time.monotonic() - started)

        parsed = parse_advisor_response(text)
        if not isinstance(parsed, Parsed):
            logger.warning("advisor_reply_unparseable", school_id=school_id, reason=parsed.reason)
            return self._fallback(school_id, factors, parsed.reason)

        urgency_scores_total.labels(source=ScoreSource.AI.value).inc()
        return UrgencyResult(
            school_id=school_id,
            score=parsed.score,
            reasoning=parsed.reasoning,
            factors=factors,
            source=ScoreSource.AI,
            ai_analysis=text,
        )

    # ── Batch ────────────────────────────────────────────────
    async def batch_score(
        self,
        school_ids: Sequence[str],
        use_ai: bool = True,
    ) -> dict[str, UrgencyResult]:
        """Score many schools, `concurrency` at a time. One entry per id."""
        results: dict[str, UrgencyResult] = {}
        unique_ids = list(dict.fromkeys(school_ids))
        total = len(unique_ids)
        started = time.monotonic()
        progress = {"done": 0}

        logger.info(
            "batch_scoring_started",
            schools=total,
            use_ai=use_ai,
            concurrency=self.concurrency,
        )

        async def run(school_id: str) -> None:
            results[school_id] = await self._score_school(school_id, use_ai)
            progress["done"] += 1
            done = progress["done"]
            if done % settings.SCORING_PROGRESS_INTERVAL == 0 or done == total:
                elapsed = time.monotonic() - started
                logger.info(
                    "batch_scoring_progress",
                    scored=done,
                    total=total,
                    elapsed_seconds=round(elapsed, 1),
                    rate=round(done / elapsed, 2) if elapsed > 0 else None,
                )

        for start in range(0, total, self.concurrency):
            group = unique_ids[start:start + self.concurrency]
            await asyncio.gather(*(run(sid) for sid in group))

        duration = time.monotonic() - started
        batch_scoring_duration_seconds.observe(duration)
        logger.info(
            "batch_scoring_completed",
            scored=len(results),
            total=total,
            duration_seconds=round(duration, 1),
        )
        return results

    async def _score_school(self, school_id: str, use_ai: bool) -> UrgencyResult:
        try:
            school = await self.store.get_school(school_id)
            issues = await self.store.list_issues_for_school(school_id)
        except Exception as e:
            logger.warning("issue_lookup_failed", school_id=school_id, error=str(e))
            return self._fallback(school_id, UrgencyFactors(), "issue history unavailable")

        try:
            return await self.score(
                school_id,
                issues,
                school_name=school.name if school and school.name else None,
                use_ai=use_ai,
            )
        except Exception as e:
            logger.error("school_scoring_failed", school_id=school_id, error=str(e))
            factors = compute_factors(issues, self.clock())
            return self._fallback(school_id, factors, "scoring error")

    # ── Internals ────────────────────────────────────────────
    def _fallback(self, school_id: str, factors: UrgencyFactors, why: str) -> UrgencyResult:
        return self._result(
            school_id, factors, ScoreSource.FALLBACK,
            f"AI analysis unavailable ({why}), using rule-based scoring",
            "Fallback mode",
        )

    def _result(
        self,
        school_id: str,
        factors: UrgencyFactors,
        source: ScoreSource,
        reasoning: str,
        ai_analysis: Optional[str],
    ) -> UrgencyResult:
        urgency_scores_total.labels(source=source.value).inc()
        return UrgencyResult(
            school_id=school_id,
            score=fallback_score(factors),
            reasoning=reasoning,
            factors=factors,
            source=source,
            ai_analysis=ai_analysis,
        )
