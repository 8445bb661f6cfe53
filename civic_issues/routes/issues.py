import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from civic_issues.core.auth import ADMIN_ROLES, get_admin_user, get_current_user
from civic_issues.core.errors import AccessDenied, InvalidCoordinates, InvalidUpdate, IssueNotFound, SelfVoteError
from civic_issues.models.issue_model import (
    Issue,
    IssueCategory,
    IssueDraft,
    IssueStatus,
    IssueUpdate,
    Priority,
    ReportingMethod,
    VoteRequest,
)
from civic_issues.services.issue_pipeline import IssueIntelligencePipeline
from civic_issues.services.issue_store import IssueQuery

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline(request: Request) -> IssueIntelligencePipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Service unavailable")
    return pipeline


def is_admin(user: dict) -> bool:
    return user.get("role") in ADMIN_ROLES


def serialize_issue(issue: Issue) -> Dict[str, Any]:
    data = issue.model_dump(mode="json")
    data["upvoteCount"] = issue.upvoteCount
    data["downvoteCount"] = issue.downvoteCount
    data["totalVotes"] = issue.totalVotes
    data["ageInDays"] = issue.ageInDays
    return data


@router.post("/issues", status_code=status.HTTP_201_CREATED)
async def create_issue(
    draft: IssueDraft,
    request: Request,
    defer_duplicate_check: bool = False,
    current_user: dict = Depends(get_current_user),
    pipeline: IssueIntelligencePipeline = Depends(get_pipeline),
):
    if draft.userAgent is None:
        draft.userAgent = request.headers.get("user-agent")
    if draft.ipAddress is None and request.client:
        draft.ipAddress = request.client.host
    if is_admin(current_user) and draft.reportingMethod == ReportingMethod.web:
        draft.reportingMethod = ReportingMethod.admin

    try:
        issue = await pipeline.create_issue(draft, current_user["id"],
                                            defer_duplicate_check=defer_duplicate_check)
    except InvalidCoordinates as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "message": "Issue reported successfully", "data": serialize_issue(issue)}


@router.get("/issues")
async def list_issues(
    status_filter: Optional[IssueStatus] = Query(None, alias="status"),
    category: Optional[IssueCategory] = None,
    priority: Optional[Priority] = None,
    reportedBy: Optional[str] = None,
    assignedTo: Optional[str] = None,
    search: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius: float = 5000.0,
    page: int = 1,
    limit: int = 20,
    sortBy: str = "createdAt",
    sortOrder: str = "desc",
    current_user: dict = Depends(get_current_user),
    pipeline: IssueIntelligencePipeline = Depends(get_pipeline),
):
    query = IssueQuery(
        status=status_filter.value if status_filter else None,
        category=category.value if category else None,
        priority=priority.value if priority else None,
        reportedBy=reportedBy,
        assignedTo=assignedTo,
        search=search,
        near=(longitude, latitude) if latitude is not None and longitude is not None else None,
        radius_m=radius,
        sort_by=sortBy,
        descending=sortOrder != "asc",
    )
    result = await pipeline.list_issues(query, current_user["id"], is_admin=is_admin(current_user),
                                        page=page, limit=limit)
    result["issues"] = [serialize_issue(issue) for issue in result["issues"]]
    return {"success": True, "data": result}


@router.get("/issues/stats")
async def get_issue_stats(
    current_admin: dict = Depends(get_admin_user),
    pipeline: IssueIntelligencePipeline = Depends(get_pipeline),
):
    try:
        return {"success": True, "data": await pipeline.stats()}
    except Exception as e:
        logger.error(f"Failed to fetch statistics: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch statistics")


@router.get("/issues/{issue_id}")
async def get_issue(
    issue_id: str,
    current_user: dict = Depends(get_current_user),
    pipeline: IssueIntelligencePipeline = Depends(get_pipeline),
):
    try:
        issue = await pipeline.view_issue(issue_id, current_user["id"], is_admin=is_admin(current_user))
    except IssueNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AccessDenied:
        raise HTTPException(status_code=403, detail="Access denied")
    return {"success": True, "data": serialize_issue(issue)}


@router.patch("/issues/{issue_id}")
async def update_issue(
    issue_id: str,
    update: IssueUpdate,
    current_admin: dict = Depends(get_admin_user),
    pipeline: IssueIntelligencePipeline = Depends(get_pipeline),
):
    try:
        issue = await pipeline.update_issue(issue_id, current_admin["id"], update)
    except IssueNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidUpdate as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "message": "Issue updated successfully", "data": serialize_issue(issue)}


@router.delete("/issues/{issue_id}")
async def delete_issue(
    issue_id: str,
    current_admin: dict = Depends(get_admin_user),
    pipeline: IssueIntelligencePipeline = Depends(get_pipeline),
):
    try:
        await pipeline.delete_issue(issue_id)
    except IssueNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "message": "Issue deleted successfully"}


@router.post("/issues/{issue_id}/vote")
async def vote_on_issue(
    issue_id: str,
    vote: VoteRequest,
    current_user: dict = Depends(get_current_user),
    pipeline: IssueIntelligencePipeline = Depends(get_pipeline),
):
    try:
        tally = await pipeline.apply_vote(issue_id, current_user["id"], vote.voteType)
    except IssueNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SelfVoteError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "message": "Vote recorded successfully", "data": tally.model_dump()}


@router.get("/ai/status")
async def ai_status(pipeline: IssueIntelligencePipeline = Depends(get_pipeline)):
    return {"success": True, "data": pipeline.ai_status()}
