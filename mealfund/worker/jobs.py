"""
RQ job functions for batch priority scoring.
These are the entry points that the worker calls.
"""

from typing import Optional

import structlog
from redis import Redis
from rq import Queue

from mealfund.config import settings
from mealfund.observability.logging import bind_request_context, clear_request_context

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the scoring job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_priority_scoring(use_ai: bool = True, school_ids: Optional[list[str]] = None) -> str:
    """
    Enqueue a batch scoring run. school_ids=None scores every known school.
    Returns the job ID.
    """
    q = get_queue()
    job = q.enqueue(
        run_priority_scoring_job,
        use_ai,
        school_ids,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
    )
    logger.info(
        "job_enqueued",
        job_id=job.id,
        use_ai=use_ai,
        schools=len(school_ids) if school_ids is not None else "all",
    )
    return job.id


def run_priority_scoring_job(use_ai: bool = True, school_ids: Optional[list[str]] = None) -> dict:
    """
    Main job function: score schools and write the results back.
    This runs inside the RQ worker process.
    """
    import asyncio

    bind_request_context(job="priority_scoring")
    logger.info("job_started", use_ai=use_ai)

    try:
        summary = asyncio.run(_run_priority_scoring_async(use_ai, school_ids))
        logger.info("job_completed", **summary)
        return summary
    except Exception as e:
        logger.error("job_failed", error=str(e))
        raise
    finally:
        clear_request_context()


async def _run_priority_scoring_async(use_ai: bool, school_ids: Optional[list[str]]) -> dict:
    from mealfund.dependencies import get_ledger_store, get_scoring_engine

    store = get_ledger_store()
    try:
        return await score_and_write_back(store, get_scoring_engine(), use_ai, school_ids)
    finally:
        if settings.LEDGER_BACKEND == "sql":
            from mealfund.models.database import close_db
            await close_db()


async def score_and_write_back(store, engine, use_ai: bool, school_ids: Optional[list[str]] = None) -> dict:
    """
    Score the schools and write each result with one row update.
    A failed write is logged and skipped; the rest still land.
    """
    from datetime import datetime, timezone

    if school_ids is None:
        school_ids = await store.list_school_ids()

    results = await engine.batch_score(school_ids, use_ai=use_ai)

    written, failed = 0, 0
    by_source: dict[str, int] = {}
    scored_at = datetime.now(timezone.utc)
    for school_id, result in results.items():
        by_source[result.source.value] = by_source.get(result.source.value, 0) + 1
        try:
            await store.update_school_priority(school_id, result.score, result.reasoning, scored_at)
            written += 1
        except Exception as e:
            failed += 1
            logger.error("priority_write_failed", school_id=school_id, error=str(e))

    return {
        "requested": len(school_ids),
        "scored": len(results),
        "written": written,
        "write_failures": failed,
        "by_source": by_source,
    }
