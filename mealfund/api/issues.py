"""
/api/v1/issues endpoints.
Report, investigate, escalate and resolve delivery issues.
"""

from fastapi import APIRouter, Depends, status

from mealfund.dependencies import get_issue_tracker, verify_api_key
from mealfund.observability.logging import bind_request_context
from mealfund.schemas.api import (
    IssueEscalateRequest,
    IssueReportRequest,
    IssueResolveRequest,
    IssueResolveResponse,
)
from mealfund.schemas.records import IssueRecord
from mealfund.services.issues import IssueTracker

router = APIRouter(prefix="/api/v1/issues", tags=["issues"], dependencies=[Depends(verify_api_key)])


@router.post("", response_model=IssueRecord, status_code=status.HTTP_201_CREATED)
async def report_issue(
    body: IssueReportRequest,
    tracker: IssueTracker = Depends(get_issue_tracker),
):
    """Report an issue. High/critical severity puts a locked escrow on hold."""
    bind_request_context(delivery_id=body.delivery_id)
    return await tracker.report(
        delivery_id=body.delivery_id,
        reported_by=body.reported_by,
        issue_type=body.issue_type,
        description=body.description,
        severity=body.severity,
    )


@router.get("/{issue_id}", response_model=IssueRecord)
async def get_issue(issue_id: str, tracker: IssueTracker = Depends(get_issue_tracker)):
    return await tracker.get(issue_id)


@router.post("/{issue_id}/investigate", response_model=IssueRecord)
async def investigate_issue(issue_id: str, tracker: IssueTracker = Depends(get_issue_tracker)):
    return await tracker.investigate(issue_id)


@router.post("/{issue_id}/escalate", response_model=IssueRecord)
async def escalate_issue(
    issue_id: str,
    body: IssueEscalateRequest,
    tracker: IssueTracker = Depends(get_issue_tracker),
):
    return await tracker.escalate(issue_id, body.severity, actor=body.actor)


@router.post("/{issue_id}/resolve", response_model=IssueResolveResponse)
async def resolve_issue(
    issue_id: str,
    body: IssueResolveRequest,
    tracker: IssueTracker = Depends(get_issue_tracker),
):
    """Resolve; may run the deferred escrow release."""
    outcome = await tracker.resolve(issue_id, body.resolution_notes, actor=body.actor)
    return IssueResolveResponse(
        issue=outcome.issue,
        release_attempted=outcome.release_attempted,
        payment_state=outcome.payment_state if outcome.release_attempted else None,
        settlement_reference=outcome.settlement_reference,
        release_error=outcome.release_error,
    )
