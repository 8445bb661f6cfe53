"""
Issue intelligence pipeline.

Ties the store, the oracle and the deterministic components together for the
request handlers. AI work (image analysis, duplicate scoring, urgency) is
advisory: every failure there is logged and the issue is still created.
Only invalid coordinates abort a submission.
"""

import asyncio
import logging
import math
from typing import Any, Coroutine, Dict, List, Optional, Set, Union

from civic_issues.core.config import Settings, get_settings
from civic_issues.core.errors import AccessDenied, InvalidCoordinates, IssueNotFound, SelfVoteError
from civic_issues.models.issue_model import (
    AIAnalysis,
    Address,
    Issue,
    IssueCategory,
    IssueDraft,
    IssueImage,
    IssueMetadata,
    IssueStatus,
    IssueUpdate,
    Location,
    Priority,
    VoteDirection,
    VoteTally,
)
from civic_issues.services.duplicate_detector import DuplicateDetector, DuplicateResult, comparison_text
from civic_issues.services.issue_lifecycle import IssueLifecycle
from civic_issues.services.issue_store import IssueQuery, IssueStore
from civic_issues.services.priority_estimator import PriorityEstimator
from civic_issues.services.similarity_oracle import DEPTH_RELEVANT_CATEGORIES, SimilarityOracle
from civic_issues.services.vote_ledger import VoteLedger
from civic_issues.utils.geo import validate_coordinates

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
MAX_PAGE_SIZE_ADMIN = 500


class IssueIntelligencePipeline:
    def __init__(self, store: IssueStore, oracle: SimilarityOracle,
                 settings: Optional[Settings] = None,
                 lifecycle: Optional[IssueLifecycle] = None):
        settings = settings or get_settings()
        self.store = store
        self.oracle = oracle
        self.detector = DuplicateDetector(oracle, max_concurrency=settings.oracle_max_concurrency)
        self.estimator = PriorityEstimator(oracle, timeout=settings.priority_timeout)
        self.lifecycle = lifecycle or IssueLifecycle()
        self.ledger = VoteLedger(clock=self.lifecycle.clock)
        self.search_radius_m = settings.duplicate_search_radius_m
        self.max_candidates = settings.duplicate_max_candidates
        self._background_tasks: Set[asyncio.Task] = set()

    # ---- background work -------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        # Hold a reference until the task finishes or it may be collected mid-flight
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._background_tasks)

    async def drain(self) -> None:
        """Wait for deferred duplicate checks (shutdown, tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ---- intelligence ----------------------------------------------------

    async def classify_duplicate(self, draft: Union[IssueDraft, Issue],
                                 exclude_id: Optional[str] = None) -> DuplicateResult:
        longitude, latitude = draft.location.coordinates
        validate_coordinates(longitude, latitude)
        try:
            candidates = await self.store.find_open_candidates(
                draft.category, longitude, latitude,
                radius_m=self.search_radius_m,
                limit=self.max_candidates,
                exclude_id=exclude_id,
            )
        except Exception as e:
            logger.warning(f"⚠️ Candidate lookup failed, skipping duplicate check: {e}", exc_info=True)
            return DuplicateResult()

        return await self.detector.detect(
            comparison_text(draft.title, draft.description),
            [longitude, latitude],
            candidates,
            image_url=draft.first_image_url(),
        )

    async def estimate_priority(self, category: Union[str, IssueCategory], description: str,
                                analysis: Optional[AIAnalysis] = None) -> Priority:
        estimate = await self.estimator.estimate_detailed(
            category, description,
            analysis_description=analysis.description if analysis else None,
        )
        if analysis is not None and estimate.sentiment is not None:
            analysis.sentiment = estimate.sentiment
        logger.info(f"Priority for {category}: {estimate.priority.value} (source={estimate.source})")
        return estimate.priority

    async def _describe_images(self, images: List[IssueImage]) -> None:
        if not self.oracle.available:
            return
        for image in images:
            try:
                image.aiDescription = await self.oracle.describe_image(image.url)
            except Exception as e:
                logger.warning(f"AI description generation failed for {image.url}: {e}")
                image.aiDescription = "AI description unavailable"

    async def _analyze_image(self, image_url: Optional[str]) -> Optional[AIAnalysis]:
        if not image_url or not self.oracle.available:
            return None
        try:
            return await self.oracle.analyze_image(image_url)
        except Exception as e:
            logger.warning(f"AI image analysis failed, continuing without it: {e}")
            return None

    async def _attach_damage_depth(self, issue: Issue) -> None:
        image_url = issue.first_image_url()
        if issue.aiAnalysis is None or not image_url or issue.category not in DEPTH_RELEVANT_CATEGORIES:
            return
        try:
            depth = await self.oracle.estimate_damage_depth(image_url, issue.category)
        except Exception as e:
            logger.warning(f"Damage depth estimation failed: {e}")
            return
        if depth.estimatedDepth:
            issue.aiAnalysis.damageDepth = depth

    async def _deferred_duplicate_check(self, issue: Issue) -> None:
        try:
            result = await self.classify_duplicate(issue, exclude_id=issue.id)
            if result.candidates:
                await self.store.set_duplicate_detection(issue.id, result.to_detection())
            logger.info(f"🔍 Deferred duplicate check for {issue.id} done "
                        f"(hasDuplicates={result.has_duplicates})")
        except Exception as e:
            logger.error(f"❌ Deferred duplicate check for {issue.id} failed: {e}", exc_info=True)

    # ---- issue operations ------------------------------------------------

    async def create_issue(self, draft: IssueDraft, reporter_id: str,
                           defer_duplicate_check: bool = False) -> Issue:
        longitude, latitude = draft.location.coordinates
        validate_coordinates(longitude, latitude)

        images = [image.model_copy() for image in draft.images]
        await self._describe_images(images)
        analysis = await self._analyze_image(images[0].url if images else None)

        category = draft.category
        if (category == IssueCategory.other and analysis is not None
                and analysis.suggestedCategory not in (None, IssueCategory.other)):
            logger.info(f"Using AI suggested category {analysis.suggestedCategory} for 'other' report")
            category = analysis.suggestedCategory

        now = self.lifecycle.clock()
        issue = Issue(
            title=draft.title,
            description=draft.description,
            category=category,
            priority=draft.priority or Priority.medium,
            location=Location(coordinates=[longitude, latitude]),
            address=draft.address or Address(),
            images=images,
            aiAnalysis=analysis,
            reportedBy=reporter_id,
            tags=draft.tags,
            metadata=IssueMetadata(
                reportingMethod=draft.reportingMethod,
                userAgent=draft.userAgent,
                ipAddress=draft.ipAddress,
            ),
            createdAt=now,
            updatedAt=now,
        )

        duplicate: Optional[DuplicateResult] = None
        if not defer_duplicate_check:
            duplicate = await self.classify_duplicate(issue)
            if duplicate.candidates:
                issue.metadata.duplicateDetection = duplicate.to_detection()

        await self._attach_damage_depth(issue)

        if duplicate is not None and duplicate.has_duplicates:
            logger.info(f"Issue {issue.id} looks like a duplicate "
                        f"(confidence={duplicate.confidence:.2f}); skipping priority estimation")
        elif draft.priority is None or draft.priority == Priority.medium:
            issue.priority = await self.estimate_priority(issue.category, issue.description, issue.aiAnalysis)

        self.lifecycle.initialize(issue)
        await self.store.insert(issue)
        logger.info(f"📝 Issue {issue.id} created: {issue.category}/{issue.priority} by {reporter_id}")

        if defer_duplicate_check:
            self._spawn(self._deferred_duplicate_check(issue))
        return issue

    async def get_issue(self, issue_id: str) -> Issue:
        issue = await self.store.get(issue_id)
        if issue is None:
            raise IssueNotFound(issue_id)
        return issue

    async def apply_status_change(self, issue: Issue, new_status: Union[str, IssueStatus],
                                  actor_id: Optional[str] = None,
                                  reason: Optional[str] = None) -> Issue:
        change = self.lifecycle.apply_status_change(issue, new_status, actor_id, reason)
        if change is None:
            return issue
        stored = await self.store.update_status(issue.id, change)
        if stored is None:
            raise IssueNotFound(issue.id)
        return stored

    @staticmethod
    def redact_for_viewer(issue: Issue) -> Issue:
        """Drop private admin notes and reporter network details for non-admin viewers."""
        issue.adminNotes = [note for note in issue.adminNotes if note.isPublic]
        issue.metadata.userAgent = None
        issue.metadata.ipAddress = None
        return issue

    async def view_issue(self, issue_id: str, viewer_id: str, is_admin: bool = False) -> Issue:
        issue = await self.get_issue(issue_id)
        if is_admin:
            return issue
        if not issue.isPublic and issue.reportedBy != viewer_id:
            raise AccessDenied(f"Issue {issue_id} is not public")
        return self.redact_for_viewer(issue)

    async def list_issues(self, query: IssueQuery, viewer_id: str, is_admin: bool = False,
                          page: int = 1, limit: int = 20) -> Dict[str, Any]:
        # Non-admins see public issues, or every issue of their own when they ask for them
        if not is_admin and query.reportedBy != viewer_id:
            query.public_only = True

        page = max(1, page)
        limit = min(MAX_PAGE_SIZE_ADMIN if is_admin else MAX_PAGE_SIZE, max(1, limit))

        issues: List[Issue] = []
        total = 0
        try:
            if query.near is not None:
                validate_coordinates(*query.near)
            issues, total = await self.store.list_issues(query, (page - 1) * limit, limit)
        except InvalidCoordinates:
            # An unusable search point matches nothing
            logger.info(f"Ignoring listing with invalid coordinates {query.near}")

        if not is_admin:
            issues = [self.redact_for_viewer(i) for i in issues]
        total_pages = math.ceil(total / limit)
        return {
            "issues": issues,
            "pagination": {
                "currentPage": page,
                "totalPages": total_pages,
                "totalCount": total,
                "limit": limit,
                "hasNextPage": page < total_pages,
                "hasPrevPage": page > 1,
            },
        }

    async def update_issue(self, issue_id: str, actor_id: str, update: IssueUpdate) -> Issue:
        issue = await self.get_issue(issue_id)
        result = self.lifecycle.apply_admin_update(issue, actor_id, update)
        if not result.changed:
            return issue
        stored = await self.store.apply_admin_update(issue_id, result)
        if stored is None:
            raise IssueNotFound(issue_id)
        logger.info(f"Issue {issue_id} updated by {actor_id}: {', '.join(result.changed_fields)}")
        return stored

    async def apply_vote(self, issue_id: str, user_id: str,
                         direction: Union[str, VoteDirection]) -> VoteTally:
        direction = VoteDirection(direction)
        issue = await self.get_issue(issue_id)
        if issue.reportedBy == user_id:
            raise SelfVoteError("You cannot vote on your own issue")

        votes = await self.store.apply_vote(issue_id, user_id, direction, self.lifecycle.clock())
        if votes is None:
            raise IssueNotFound(issue_id)
        return self.ledger.tally(votes)

    async def delete_issue(self, issue_id: str) -> None:
        issue = await self.get_issue(issue_id)
        if not await self.store.delete(issue_id):
            raise IssueNotFound(issue_id)
        stale = [image.publicId for image in issue.images if image.publicId]
        if stale:
            logger.info(f"Issue {issue_id} deleted; image references dropped: {stale}")
        else:
            logger.info(f"Issue {issue_id} deleted")

    async def stats(self) -> Dict[str, Any]:
        return await self.store.stats()

    def ai_status(self) -> Dict[str, Any]:
        return self.oracle.status()
