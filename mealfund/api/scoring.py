"""
/api/v1/scoring endpoints.
Batch runs go through the RQ worker; a single school can be scored inline
(read-only, nothing is written back).
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from redis import Redis

from mealfund.config import settings
from mealfund.dependencies import get_ledger_store, get_scoring_engine, verify_api_key
from mealfund.errors import NotFound
from mealfund.ledger.base import LedgerStore
from mealfund.schemas.api import ScoringJobRequest, ScoringJobResponse, ScoringJobStatus
from mealfund.schemas.records import SchoolPriority
from mealfund.scoring.engine import UrgencyResult, UrgencyScoringEngine

router = APIRouter(prefix="/api/v1/scoring", tags=["scoring"], dependencies=[Depends(verify_api_key)])


@router.post("/jobs", response_model=ScoringJobResponse, status_code=202)
async def start_scoring_job(body: ScoringJobRequest):
    """Queue a batch priority scoring run."""
    from mealfund.worker.jobs import enqueue_priority_scoring

    try:
        job_id = enqueue_priority_scoring(use_ai=body.use_ai, school_ids=body.school_ids)
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Queue unavailable: {str(e)}")
    return ScoringJobResponse(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=ScoringJobStatus)
async def get_scoring_job(job_id: str):
    try:
        from rq.job import Job

        job = Job.fetch(job_id, connection=Redis.from_url(settings.REDIS_URL))
        return ScoringJobStatus(
            job_id=job_id,
            status=str(job.get_status()),
            result=job.result if job.is_finished else None,
            error_message=str(job.exc_info) if job.exc_info else None,
        )
    except Exception as e:
        raise HTTPException(status_code=404, detail=f"Job not found: {str(e)}")


@router.get("/schools/{school_id}", response_model=SchoolPriority)
async def get_school_priority(school_id: str, store: LedgerStore = Depends(get_ledger_store)):
    """Last written priority score for a school."""
    school = await store.get_school(school_id)
    if school is None:
        raise NotFound(f"School {school_id} not found")
    return school


@router.post("/schools/{school_id}/preview", response_model=UrgencyResult)
async def preview_school_score(
    school_id: str,
    use_ai: bool = Query(True),
    store: LedgerStore = Depends(get_ledger_store),
    engine: UrgencyScoringEngine = Depends(get_scoring_engine),
):
    school = await store.get_school(school_id)
    if school is None:
        raise NotFound(f"School {school_id} not found")
    issues = await store.list_issues_for_school(school_id)
    return await engine.score(school_id, issues, school_name=school.name, use_ai=use_ai)
